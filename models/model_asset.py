"""Inference model asset and prediction types."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

ModelSource = Literal["bundled", "downloaded"]


@dataclass(frozen=True)
class ModelAsset:
    """The inference binary currently referenced for predictions."""

    source: ModelSource
    uri: Path


@dataclass(frozen=True)
class Prediction:
    label: str
    confidence: float


class _Unavailable:
    """Signal that no prediction could be produced (no ready model)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNAVAILABLE"


UNAVAILABLE = _Unavailable()
