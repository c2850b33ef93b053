"""Map on-device diagnosis records onto the remote scan submission schema."""

from __future__ import annotations

from typing import Any, Dict, Optional

from models.diagnosis_record import DiagnosisRecord

_TRI_STATE = {"Yes", "No", "Not Sure"}


def _tri_state(value: Optional[str]) -> str:
    return value if value in _TRI_STATE else "Not Sure"


def build_submission(
    record: DiagnosisRecord,
    image_url: Optional[str],
    device_info: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build the camelCase payload the sync endpoint stores for `record`."""
    payload: Dict[str, Any] = {
        "localId": record.id,
        "timestamp": record.captured_at,
        "imageMetadata": dict(record.image_metadata),
        "growthStage": record.growth_stage,
        "diagnosis": {
            "modelPrediction": record.label,
            "confidence": record.confidence,
            "severity": record.severity,
            "userVerified": record.user_verified,
            "finalDiagnosis": record.final_label or record.label,
        },
        "environment": {
            "weather": record.weather,
            "weedPresence": _tri_state(record.weed_presence),
            "leafhopperObserved": _tri_state(record.vector_observation),
        },
        "appUsage": {"retries": record.sync_attempts, "resultAccepted": record.user_verified},
        "deviceInfo": dict(device_info or {}),
        "imageUrl": image_url,
    }
    if record.location is not None:
        payload["location"] = {
            "latitude": record.location.lat,
            "longitude": record.location.lon,
            "accuracy": record.location.accuracy,
        }
    return payload
