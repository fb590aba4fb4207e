from fastapi.testclient import TestClient

from obsgrid.db import SessionLocal
from obsgrid.models.observation import Observation
from obsgrid.services.catalog.critterbase import get_catalog

CSV = (
    "ITIS_TSN,COUNT,DATE,TIME,LAT,LON,Life Stage,body mass,Comments\n"
    "180703,2,2024-05-01,08:30,49.1,-123.2,adult,350,cow with calf\n"
    "180703,1,2024-05-01,09:00,49.2,-123.1,1,,\n"
)


def _upload(client, survey_id, content=CSV, filename="moose.csv", content_type="text/csv"):
    data = content.encode() if isinstance(content, str) else content
    return client.post(
        f"/surveys/{survey_id}/observations/upload",
        files={"media": (filename, data, content_type)},
    )


def _process(client, survey_id, submission_id, options=None):
    return client.post(
        f"/surveys/{survey_id}/observations/process",
        json={"submission_id": submission_id, "options": options},
    )


class MalformedCatalog:
    def taxon_measurements(self, tsn):
        raise KeyError("qualitative")

    def search(self, tsn, keyword=None):
        return []


def _observation_count(survey_id):
    db = SessionLocal()
    try:
        return db.query(Observation).filter(Observation.survey_id == survey_id).count()
    finally:
        db.close()


def test_upload_rejects_non_csv(client, survey_id):
    r = _upload(client, survey_id, filename="moose.xlsx", content_type="application/octet-stream")

    assert r.status_code == 400
    assert "Invalid file type" in r.json()["detail"]


def test_upload_rejects_empty_file(client, survey_id):
    assert _upload(client, survey_id, content=b"").status_code == 400


def test_upload_unknown_survey_is_404(client):
    assert _upload(client, 999).status_code == 404


def test_upload_then_process_creates_observations(client, survey_id):
    sid = _upload(client, survey_id).json()["submission_id"]
    assert client.get(f"/surveys/{survey_id}/observations/submissions/{sid}").json()["status"] == "uploaded"

    r = _process(client, survey_id, sid)

    assert r.status_code == 200, r.text
    assert r.json() == {"submission_id": sid, "status": "succeeded", "created": 2}

    body = client.get(f"/surveys/{survey_id}/observations").json()
    assert body["supplementary"]["observation_count"] == 2
    assert {d["id"] for d in body["supplementary"]["measurement_definitions"]} == {"tm-life-stage", "tm-body-mass"}
    first, second = body["observations"]
    assert first["measurements"] == {
        "tm-life-stage": {"kind": "qualitative", "value": "opt-adult"},
        "tm-body-mass": {"kind": "quantitative", "value": 350.0},
    }
    assert first["comment"] == "cow with calf"
    # 序数値 1 は juvenile
    assert second["measurements"] == {"tm-life-stage": {"kind": "qualitative", "value": "opt-juvenile"}}


def test_processing_is_all_or_nothing(client, survey_id):
    bad = CSV + "180703,,2024-05-01,10:00,49.3,-123.0,elder,2000,\n"
    sid = _upload(client, survey_id, content=bad).json()["submission_id"]

    r = _process(client, survey_id, sid)

    assert r.status_code == 422
    detail = r.json()["detail"]
    assert detail["message"].startswith("Failed to process file")
    assert {(e["row"], e["field"]) for e in detail["errors"]} == {
        (3, "COUNT"), (3, "Life Stage"), (3, "body mass"),
    }
    assert _observation_count(survey_id) == 0
    sub = client.get(f"/surveys/{survey_id}/observations/submissions/{sid}").json()
    assert sub["status"] == "failed"
    assert len(sub["errors"]) == 3


def test_missing_required_column(client, survey_id):
    sid = _upload(client, survey_id, content="TSN,DATE\n180703,2024-05-01\n").json()["submission_id"]

    r = _process(client, survey_id, sid)

    assert r.status_code == 422
    assert r.json()["detail"]["errors"] == [{"row": None, "field": "COUNT", "message": "Missing required column: COUNT"}]


def test_unrecognized_column_is_reported(client, survey_id):
    sid = _upload(client, survey_id, content="TSN,COUNT,antler spread\n180703,1,120\n").json()["submission_id"]

    r = _process(client, survey_id, sid)

    assert r.status_code == 422
    assert r.json()["detail"]["errors"][0]["field"] == "antler spread"


def test_non_finite_measurement_is_rejected(client, survey_id):
    content = "ITIS_TSN,COUNT,body mass\n180703,1,nan\n180703,1,12\n"
    sid = _upload(client, survey_id, content=content).json()["submission_id"]

    r = _process(client, survey_id, sid)

    assert r.status_code == 422
    assert [(e["row"], e["field"]) for e in r.json()["detail"]["errors"]] == [(1, "body mass")]
    listed = client.get(f"/surveys/{survey_id}/observations")
    assert listed.status_code == 200
    assert listed.json()["observations"] == []


def test_unexpected_processing_error_marks_the_submission_failed(app, survey_id):
    app.dependency_overrides[get_catalog] = lambda: MalformedCatalog()
    with TestClient(app, raise_server_exceptions=False) as c:
        sid = _upload(c, survey_id).json()["submission_id"]

        assert _process(c, survey_id, sid).status_code == 500
        sub = c.get(f"/surveys/{survey_id}/observations/submissions/{sid}").json()
        assert _process(c, survey_id, sid).status_code == 409

    assert sub["status"] == "failed"
    assert sub["errors"] == [{"row": None, "field": None, "message": "'qualitative'"}]
    assert _observation_count(survey_id) == 0


def test_submission_is_processed_once(client, survey_id):
    sid = _upload(client, survey_id).json()["submission_id"]
    assert _process(client, survey_id, sid).status_code == 200

    assert _process(client, survey_id, sid).status_code == 409
    assert _process(client, survey_id, sid + 100).status_code == 404


def test_period_option_binds_every_row(client, survey_id):
    site = client.post(
        f"/surveys/{survey_id}/sample-sites",
        json={"name": "Block A", "methods": [{"name": "Aerial transect", "periods": [{"start_at": "2024-05-01T08:00:00"}]}]},
    ).json()
    method = site["methods"][0]
    period_id = method["periods"][0]["id"]
    sid = _upload(client, survey_id).json()["submission_id"]

    r = _process(client, survey_id, sid, {"survey_sample_period_id": period_id})

    assert r.status_code == 200, r.text
    rows = client.get(f"/surveys/{survey_id}/observations").json()["observations"]
    assert {(o["survey_sample_site_id"], o["survey_sample_method_id"], o["survey_sample_period_id"]) for o in rows} == {
        (site["id"], method["id"], period_id)
    }


def test_sampling_columns_are_resolved_by_name(client, survey_id):
    site = client.post(
        f"/surveys/{survey_id}/sample-sites",
        json={"name": "Block A", "methods": [{"name": "Aerial transect", "periods": [{"start_at": "2024-05-01T08:00:00"}]}]},
    ).json()
    content = "TSN,COUNT,SITE,METHOD,PERIOD\n180703,1,block a,aerial transect,2024-05-01\n180703,1,Block B,,\n"
    sid = _upload(client, survey_id, content=content).json()["submission_id"]

    r = _process(client, survey_id, sid)

    assert r.status_code == 422
    assert r.json()["detail"]["errors"] == [
        {"row": 2, "field": "SAMPLING_SITE", "message": "Unknown sampling site: Block B"}
    ]
    assert site["id"]


def test_save_update_and_delete(client, survey_id, life_stage, body_mass):
    payload = {
        "observations": [{
            "standard": {"itis_tsn": 180703, "count": 3, "latitude": 49.0, "longitude": -123.0,
                         "observation_date": "2024-06-01", "observation_time": "10:15"},
            "measurements": {"tm-body-mass": {"kind": "quantitative", "value": 412.5}},
        }],
        "definitions": [body_mass.model_dump(mode="json")],
    }
    r = client.put(f"/surveys/{survey_id}/observations", json=payload)
    assert r.status_code == 200, r.text
    (obs_id,) = r.json()["survey_observation_ids"]

    payload["observations"][0]["standard"]["survey_observation_id"] = obs_id
    payload["observations"][0]["standard"]["count"] = 4
    payload["observations"][0]["measurements"] = {"tm-life-stage": {"kind": "qualitative", "value": "opt-adult"}}
    payload["definitions"] = [life_stage.model_dump(mode="json")]
    assert client.put(f"/surveys/{survey_id}/observations", json=payload).json() == {"survey_observation_ids": [obs_id]}

    body = client.get(f"/surveys/{survey_id}/observations").json()
    assert body["observations"][0]["count"] == 4
    assert body["observations"][0]["measurements"] == {"tm-life-stage": {"kind": "qualitative", "value": "opt-adult"}}
    assert [d["id"] for d in body["supplementary"]["measurement_definitions"]] == ["tm-life-stage"]

    r = client.post(f"/surveys/{survey_id}/observations/measurements/delete", json={"measurement_ids": ["tm-life-stage"]})
    assert r.json() == {"deleted": 1}
    assert client.get(f"/surveys/{survey_id}/observations").json()["observations"][0]["measurements"] == {}

    r = client.post(f"/surveys/{survey_id}/observations/delete", json={"observation_ids": [obs_id]})
    assert r.json() == {"deleted": 1}
    assert _observation_count(survey_id) == 0


def test_update_of_unknown_observation_is_404(client, survey_id):
    payload = {"observations": [{"standard": {"survey_observation_id": 12345, "count": 1}}]}

    assert client.put(f"/surveys/{survey_id}/observations", json=payload).status_code == 404


def test_taxon_measurement_search(client):
    r = client.get("/taxa/180703/measurements", params={"keyword": "MASS"})

    assert r.status_code == 200
    assert [d["id"] for d in r.json()] == ["tm-body-mass"]
    assert r.json()[0]["kind"] == "quantitative"


def test_survey_crud_and_stats(client, survey_id):
    created = client.post("/surveys", json={"name": "Caribou count", "start_date": "2024-03-02"}).json()
    sid = created["id"]
    assert created["end_date"] is None and created["observation_count"] == 0

    assert client.patch(f"/surveys/{sid}", json={"observers": "A,B"}).json()["observers"] == "A,B"
    assert client.patch(f"/surveys/{sid}", json={"end_date": "2024-03-01"}).status_code == 422
    assert client.post("/surveys", json={"name": "x", "start_date": "2024-03-02", "end_date": "2024-03-01"}).status_code == 422

    stats = client.get(f"/surveys/{sid}/stats").json()
    assert stats == {"survey_id": sid, "observations_count": 0, "submissions": {}}
    # 開始日の新しい順
    assert [s["id"] for s in client.get("/surveys").json()] == [survey_id, sid]

    assert client.delete(f"/surveys/{sid}").json() == {"ok": True}
    assert client.get(f"/surveys/{sid}").status_code == 404


def test_deleting_a_survey_removes_its_observations(client, survey_id):
    sid = _upload(client, survey_id).json()["submission_id"]
    assert _process(client, survey_id, sid).status_code == 200
    assert client.get(f"/surveys/{survey_id}").json()["observation_count"] == 2

    client.delete(f"/surveys/{survey_id}")

    assert _observation_count(survey_id) == 0
