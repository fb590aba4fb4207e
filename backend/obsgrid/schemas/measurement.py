# backend/obsgrid/schemas/measurement.py
"""
Measurement definitions (taxon-linked, from the external catalog) and the
tagged measurement values attached to observation rows.
"""
import math
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

MeasurementKind = Literal["qualitative", "quantitative"]


class MeasurementOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    value: Optional[int] = None  # 選択肢の序数（CSV取込で数値指定を許可）
    description: Optional[str] = None


class QualitativeMeasurementDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["qualitative"] = "qualitative"
    id: str
    taxon_id: Optional[int] = None
    name: str
    description: Optional[str] = None
    options: List[MeasurementOption] = []

    def find_option(self, raw: Any) -> Optional[MeasurementOption]:
        """Match an option by id, label (case-insensitive) or ordinal value."""
        if raw is None:
            return None
        text = str(raw).strip()
        if not text:
            return None
        for opt in self.options:
            if opt.id == text or opt.label.lower() == text.lower():
                return opt
        try:
            number = float(text)
        except ValueError:
            return None
        for opt in self.options:
            if opt.value is not None and opt.value == number:
                return opt
        return None


class QuantitativeMeasurementDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["quantitative"] = "quantitative"
    id: str
    taxon_id: Optional[int] = None
    name: str
    description: Optional[str] = None
    unit: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None

    def in_range(self, value: float) -> bool:
        if not math.isfinite(value):
            return False
        # 下限・上限はそれぞれ任意（0 も有効な境界値）
        if self.min is not None and value < self.min:
            return False
        if self.max is not None and value > self.max:
            return False
        return True


MeasurementDefinition = Annotated[
    Union[QualitativeMeasurementDefinition, QuantitativeMeasurementDefinition],
    Field(discriminator="kind"),
]


class QualitativeValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["qualitative"] = "qualitative"
    value: str  # option id


class QuantitativeValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["quantitative"] = "quantitative"
    value: float = Field(allow_inf_nan=False)


MeasurementValue = Annotated[
    Union[QualitativeValue, QuantitativeValue],
    Field(discriminator="kind"),
]


class TaxonMeasurements(BaseModel):
    qualitative: List[QualitativeMeasurementDefinition] = []
    quantitative: List[QuantitativeMeasurementDefinition] = []

    def all(self) -> list:
        return [*self.qualitative, *self.quantitative]

    def find_by_name(self, name: str):
        key = name.strip().lower()
        for definition in self.all():
            if definition.name.lower() == key:
                return definition
        return None

    def find_by_id(self, measurement_id: str):
        for definition in self.all():
            if definition.id == measurement_id:
                return definition
        return None


def definitions_from_catalog(payload: dict) -> TaxonMeasurements:
    """Convert a Critterbase ``/xref/taxon-measurements`` response."""
    qualitative = [
        QualitativeMeasurementDefinition(
            id=item["taxon_measurement_id"],
            taxon_id=item.get("itis_tsn"),
            name=item["measurement_name"],
            description=item.get("measurement_desc"),
            options=[
                MeasurementOption(
                    id=opt["qualitative_option_id"],
                    label=opt["option_label"],
                    value=opt.get("option_value"),
                    description=opt.get("option_desc"),
                )
                for opt in item.get("options") or []
            ],
        )
        for item in payload.get("qualitative") or []
    ]
    quantitative = [
        QuantitativeMeasurementDefinition(
            id=item["taxon_measurement_id"],
            taxon_id=item.get("itis_tsn"),
            name=item["measurement_name"],
            description=item.get("measurement_desc"),
            unit=item.get("unit"),
            min=item.get("min_value"),
            max=item.get("max_value"),
        )
        for item in payload.get("quantitative") or []
    ]
    return TaxonMeasurements(qualitative=qualitative, quantitative=quantitative)
