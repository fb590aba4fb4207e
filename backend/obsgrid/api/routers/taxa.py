from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from obsgrid.schemas.measurement import MeasurementDefinition
from obsgrid.services.catalog.critterbase import CatalogUnavailable, CritterbaseCatalog, get_catalog

router = APIRouter()


@router.get("/{tsn}/measurements")
def taxon_measurements(
    tsn: int,
    keyword: Optional[str] = None,
    catalog: CritterbaseCatalog = Depends(get_catalog),
) -> list[MeasurementDefinition]:
    """分類群（TSN）に適用できる計測項目定義。keyword は項目名の部分一致（選択済み除外は呼び出し側）"""
    try:
        return catalog.search(tsn, keyword)
    except CatalogUnavailable as e:
        raise HTTPException(status_code=502, detail=str(e))
