from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class GeoPoint:
    """Capture location in decimal degrees."""

    lat: float
    lon: float
    accuracy: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"lat": self.lat, "lon": self.lon}
        if self.accuracy is not None:
            data["accuracy"] = self.accuracy
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["GeoPoint"]:
        if not data:
            return None
        lat = data.get("lat", data.get("latitude"))
        lon = data.get("lon", data.get("longitude"))
        if lat is None or lon is None:
            return None
        return cls(lat=float(lat), lon=float(lon), accuracy=data.get("accuracy"))


@dataclass
class DiagnosisRecord:
    """One analyzed leaf sample kept in the on-device history.

    Attributes:
        id: Client-generated identifier, stable for the record's lifetime.
        captured_at: ISO-8601 timestamp of the analysis.
        image_ref: Durable reference to the image (local path or URL).
        label: Label produced by the classifier.
        confidence: Classifier confidence in [0, 1].
        remote_image_url: URL of the uploaded image once stored remotely.
        user_verified: Whether a person confirmed or corrected the label.
        final_label: Label after correction; defaults to `label`.
        location: Optional capture location.
        vector_observation: Pest-vector presence ("Yes", "No", "Not Sure").
        synced: True only after the remote repository accepted the record.
        owner_identity: Identity of the capturing user, if known.
        sync_attempts: Number of failed sync attempts since the last success.
        next_attempt_at: Earliest time an automatic sync may retry the record.
        last_error: Message of the most recent sync failure.
    """

    id: str = field(default_factory=lambda: uuid4().hex)
    captured_at: str = field(default_factory=utc_now_iso)
    image_ref: Any = None
    label: Optional[str] = None
    confidence: float = 0.0
    remote_image_url: Optional[str] = None
    user_verified: bool = False
    final_label: Optional[str] = None
    location: Optional[GeoPoint] = None
    vector_observation: Optional[str] = None
    synced: bool = False
    owner_identity: Optional[str] = None
    severity: str = "Unknown"
    growth_stage: str = "Unknown"
    weather: str = "Unknown"
    weed_presence: str = "Not Sure"
    image_metadata: Dict[str, Any] = field(default_factory=dict)
    sync_attempts: int = 0
    next_attempt_at: Optional[str] = None
    last_error: Optional[str] = None

    def __post_init__(self) -> None:
        self.confidence = min(max(float(self.confidence or 0.0), 0.0), 1.0)
        if self.final_label is None:
            self.final_label = self.label

    def copy(self, **changes: Any) -> "DiagnosisRecord":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the camelCase keys of the persisted history list."""
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "location":
                value = value.to_dict() if value else None
            elif f.name == "image_metadata":
                value = dict(value)
            data[_JSON_KEYS[f.name]] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DiagnosisRecord":
        """Build a record from a persisted dict, ignoring unknown keys."""
        kwargs: Dict[str, Any] = {}
        for name, key in _JSON_KEYS.items():
            if key in data:
                kwargs[name] = data[key]
        if "id" not in kwargs:
            raise ValueError("Diagnosis record is missing its id")
        kwargs["id"] = str(kwargs["id"])
        kwargs["location"] = GeoPoint.from_dict(kwargs.get("location"))
        kwargs["image_metadata"] = dict(kwargs.get("image_metadata") or {})
        return cls(**kwargs)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


_JSON_KEYS = {f.name: _camel(f.name) for f in fields(DiagnosisRecord)}
