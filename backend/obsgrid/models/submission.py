from sqlalchemy import Integer, String, Column, ForeignKey, DateTime, JSON
from .base import Base


class ObservationSubmission(Base):
    __tablename__ = "observation_submissions"
    id = Column(Integer, primary_key=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), nullable=False)
    original_filename = Column(String, nullable=False)
    file_path = Column(String, nullable=False)
    status = Column(String, nullable=False, default="uploaded")  # uploaded|processing|succeeded|failed
    options = Column(JSON, nullable=True)
    errors = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False)
    processed_at = Column(DateTime, nullable=True)
