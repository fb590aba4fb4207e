from sqlalchemy import Integer, String, Column, ForeignKey, Float, JSON, UniqueConstraint
from .base import Base


class ObservationMeasurement(Base):
    __tablename__ = "observation_measurements"
    __table_args__ = (UniqueConstraint("observation_id", "taxon_measurement_id"),)
    id = Column(Integer, primary_key=True)
    observation_id = Column(Integer, ForeignKey("observations.id", ondelete="CASCADE"), nullable=False)
    taxon_measurement_id = Column(String, nullable=False)
    kind = Column(String, nullable=False)  # qualitative|quantitative
    option_id = Column(String, nullable=True)  # qualitative のみ
    value = Column(Float, nullable=True)  # quantitative のみ


class MeasurementDefinitionRecord(Base):
    """カタログから取得した計測項目定義のスナップショット（スキーマ変更なしで列を保持する）"""

    __tablename__ = "measurement_definitions"
    taxon_measurement_id = Column(String, primary_key=True)
    kind = Column(String, nullable=False)
    definition = Column(JSON, nullable=False)
