from datetime import datetime
import uuid
from sqlalchemy import Column, String, DateTime, JSON

from .base import Base
from .scope_records import EmissionValues, Measurement


class EmissionDataEntry(Base):
    """
    A processed data entry: the already-converted emission result for one
    scopeIdentifier at one timestamp.  Written by the calculation pipeline,
    read-only for the allocation engine.
    """
    __tablename__ = 'emission_data_entries'

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String, nullable=False, index=True)
    scope_identifier = Column(String, nullable=False, index=True)
    scope_type = Column(String, nullable=True)
    input_type = Column(String, nullable=True)  # "manual", "API", "IOT"
    emission_factor = Column(String, nullable=True)  # e.g. "DEFRA", "IPCC", "Custom"
    processing_status = Column(String, nullable=False, default="processed")
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)

    # {"incoming": {"<bucket>": {"CO2e": .., "CO2": .., "CH4": .., "N2O": .., "uncertainty": ..}}}
    calculated_emissions = Column(JSON, nullable=True)

    def to_measurement(self) -> Measurement:
        return Measurement(
            scope_identifier=self.scope_identifier,
            values=EmissionValues.from_calculated_emissions(self.calculated_emissions),
            timestamp=self.timestamp,
            scope_type=self.scope_type,
            input_type=self.input_type,
            emission_factor=self.emission_factor,
            entry_id=self.id,
        )

    def __repr__(self):
        return f"<EmissionDataEntry(id={self.id[:8]}, scope={self.scope_identifier}, status={self.processing_status})>"
