"""Remote scan document schema.

Submission payloads arrive as camelCase JSON from devices; the same models are
used to validate each element of a sync batch and to render stored documents.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

TriState = Literal["Yes", "No", "Not Sure"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())


class Location(_CamelModel):
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    accuracy: Optional[float] = None


class ImageMetadata(_CamelModel):
    resolution: Optional[str] = None
    orientation: Optional[str] = None
    flash_used: Optional[bool] = None
    quality_flag: Literal["Good", "Blurry", "Poor Lighting", "Unknown"] = "Unknown"


class Diagnosis(_CamelModel):
    model_prediction: Optional[str] = None
    confidence: Optional[float] = Field(None, ge=0, le=1)
    severity: Literal["Mild", "Moderate", "Severe", "Unknown"] = "Unknown"
    user_verified: bool = False
    final_diagnosis: Optional[str] = None


class Environment(_CamelModel):
    weather: Literal["Sunny", "Cloudy", "Rainy", "Unknown"] = "Unknown"
    weed_presence: TriState = "Not Sure"
    leafhopper_observed: TriState = "Not Sure"


class AppUsage(_CamelModel):
    retries: int = 0
    time_spent_seconds: Optional[float] = None
    result_accepted: Optional[bool] = None


class DeviceInfo(_CamelModel):
    model: Optional[str] = None
    os_version: Optional[str] = None


class ScanSubmission(_CamelModel):
    """One element of a sync batch, or the body of a single scan creation."""

    local_id: str
    location: Optional[Location] = None
    timestamp: Optional[datetime] = None
    image_metadata: ImageMetadata = Field(default_factory=ImageMetadata)
    growth_stage: Literal["Seedling", "Vegetative", "Reproductive", "Unknown"] = "Unknown"
    plant_age: Optional[str] = None
    diagnosis: Diagnosis
    environment: Environment = Field(default_factory=Environment)
    app_usage: AppUsage = Field(default_factory=AppUsage)
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)
    image_url: Optional[str] = None

    @field_validator("local_id")
    @classmethod
    def _local_id_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("localId must not be empty")
        return value


class ScanDocument(ScanSubmission):
    """A stored scan, owned by one user and stamped on receipt."""

    id: Optional[int] = None
    owner_id: str
    received_at: datetime
