"""Offline risk model used when the coordinator's seer endpoint is unavailable."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Union

DEFAULT_CAUSE = "Systemic infection following prolonged stress."


def _frozen(mapping: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class PredictionModel:
    """Normalized coefficient table. Replaced wholesale, never edited."""

    intercept: float = 0.0
    age: float = 0.0
    age_sq: float = 0.0
    city: Mapping[str, float] = field(default_factory=lambda: _frozen({}))
    country: Mapping[str, float] = field(default_factory=lambda: _frozen({}))
    tags: Mapping[str, float] = field(default_factory=lambda: _frozen({}))
    cause: Mapping[str, str] = field(default_factory=lambda: _frozen({"default": DEFAULT_CAUSE}))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "intercept": self.intercept,
            "age": self.age,
            "age_sq": self.age_sq,
            "city": dict(self.city),
            "country": dict(self.country),
            "tags": dict(self.tags),
            "cause": dict(self.cause),
        }


@dataclass(frozen=True)
class Prediction:
    risk: float
    years_remaining: int
    cause: str


@dataclass(frozen=True)
class Fate:
    """Prediction plus the narrative shown to the user."""

    prediction: str
    years_remaining: int
    risk_score: float
    advisory: str
    reason: str
    source: str = "local"

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "Fate":
        if not isinstance(data, Mapping):
            raise TypeError("prediction payload must be a JSON object")
        return cls(
            prediction=str(data.get("prediction") or ""),
            years_remaining=int(data.get("yearsRemaining", data.get("years_remaining", 0)) or 0),
            risk_score=float(data.get("riskScore", data.get("risk_score", 0.0)) or 0.0),
            advisory=str(data.get("advisory") or ""),
            reason=str(data.get("reason") or ""),
            source="remote",
        )


DEFAULT_MODEL = PredictionModel(
    intercept=-6.35,
    age=0.072,
    age_sq=-0.00028,
    city=_frozen(
        {
            "new york": 0.48,
            "los angeles": 0.32,
            "mumbai": 0.55,
            "delhi": 0.58,
            "tokyo": -0.42,
            "osaka": -0.35,
            "london": 0.12,
            "lagos": 0.61,
            "jakarta": 0.44,
            "sydney": -0.28,
        }
    ),
    country=_frozen(
        {
            "united states": 0.32,
            "india": 0.41,
            "nigeria": 0.63,
            "indonesia": 0.47,
            "japan": -0.48,
            "australia": -0.36,
            "united kingdom": 0.18,
            "canada": -0.22,
            "germany": -0.19,
            "brazil": 0.29,
        }
    ),
    tags=_frozen(
        {
            "smoker": 0.58,
            "diabetes": 0.46,
            "hypertension": 0.37,
            "athlete": -0.32,
            "vegan": -0.21,
        }
    ),
    cause=_frozen(
        {
            "smoker": "Respiratory failure from chronic exposure to toxins.",
            "diabetes": "Organ failure due to uncontrolled diabetes.",
            "hypertension": "Hypertensive crisis leading to stroke.",
            "mumbai": "Vector-borne disease outbreak in dense urban settlement.",
            "delhi": "Air-quality driven respiratory collapse.",
            "lagos": "Water-borne infection during seasonal floods.",
            "tokyo": "Peaceful passing in a low-risk environment.",
            "japan": "Natural causes after an extended life expectancy.",
            "default": DEFAULT_CAUSE,
        }
    ),
)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

# Field aliases seen in coordinator payloads, first match wins.
_ALIASES: Dict[str, Tuple[str, ...]] = {
    "intercept": ("intercept", "Intercept"),
    "age": ("age", "Age"),
    "age_sq": ("age_sq", "ageSq", "AgeSq"),
    "city": ("city", "City"),
    "country": ("country", "Country"),
    "tags": ("tags", "ethnicity", "Ethnicity"),
    "cause": ("cause", "cause_map", "CauseMap"),
}


def _pick(raw: Mapping[str, Any], name: str) -> Any:
    for alias in _ALIASES[name]:
        if raw.get(alias) is not None:
            return raw[alias]
    return None


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0.0
    return parsed if math.isfinite(parsed) else 0.0


def _coefficients(value: Any) -> Mapping[str, float]:
    if not isinstance(value, Mapping):
        return _frozen({})
    return _frozen({str(key).lower(): _number(coef) for key, coef in value.items()})


def normalize(raw: Union[PredictionModel, Mapping[str, Any], None]) -> PredictionModel:
    """Coerce a loosely typed coefficient table into a :class:`PredictionModel`.

    ``None`` or an empty table yields :data:`DEFAULT_MODEL`. Keys are
    lower-cased, unusable numbers become 0 and a ``default`` cause is always
    present. Normalizing a normalized model returns an equal model.
    """

    if isinstance(raw, PredictionModel):
        raw = raw.as_dict()
    if not raw or not isinstance(raw, Mapping):
        return DEFAULT_MODEL
    causes: Dict[str, str] = {}
    cause_map = _pick(raw, "cause")
    if isinstance(cause_map, Mapping):
        causes = {str(key).lower(): str(text) for key, text in cause_map.items() if text is not None}
    if not causes.get("default"):
        causes["default"] = DEFAULT_CAUSE
    return PredictionModel(
        intercept=_number(_pick(raw, "intercept")),
        age=_number(_pick(raw, "age")),
        age_sq=_number(_pick(raw, "age_sq")),
        city=_coefficients(_pick(raw, "city")),
        country=_coefficients(_pick(raw, "country")),
        tags=_coefficients(_pick(raw, "tags")),
        cause=_frozen(causes),
    )


# ---------------------------------------------------------------------------
# Prediction
# ---------------------------------------------------------------------------


def _sigmoid(score: float) -> float:
    try:
        return 1.0 / (1.0 + math.exp(-score))
    except OverflowError:
        return 0.0


def _clamp01(value: float) -> float:
    if value < 0:
        return 0.0
    if value > 1:
        return 1.0
    return value


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def select_cause(contributions: Mapping[str, float], causes: Mapping[str, str]) -> str:
    best_key = ""
    best_value = 0.0
    for key, value in contributions.items():
        if value > best_value and causes.get(key):
            best_key = key
            best_value = value
    return best_key or "default"


def predict(
    age: float,
    city: str = "",
    country: str = "",
    tags: str = "",
    model: Optional[PredictionModel] = None,
) -> Prediction:
    model = model or DEFAULT_MODEL
    age = _number(age)
    score = model.intercept + model.age * age + model.age_sq * age * age
    contributions: Dict[str, float] = {}

    city_key = (city or "").strip().lower()
    if city_key in model.city:
        score += model.city[city_key]
        contributions[city_key] = model.city[city_key]

    country_key = (country or "").strip().lower()
    if country_key in model.country:
        score += model.country[country_key]
        contributions[country_key] = model.country[country_key]

    lowered_tags = (tags or "").strip().lower()
    for key, coef in model.tags.items():
        if key in lowered_tags:
            score += coef
            contributions[key] = coef

    risk = _clamp01(_sigmoid(score))
    years_remaining = max(5, _round_half_up(95 - age - risk * 12))
    cause_key = select_cause(contributions, model.cause)
    cause = model.cause.get(cause_key) or model.cause.get("default") or DEFAULT_CAUSE
    return Prediction(risk=risk, years_remaining=years_remaining, cause=cause)


def local_fate(
    age: float,
    city: str = "",
    country: str = "",
    tags: str = "",
    model: Optional[PredictionModel] = None,
) -> Fate:
    result = predict(age, city, country, tags, model=model)
    if result.risk > 0.65:
        prediction = "A storm gathers sooner than expected."
        advisory = "Adopt healthier routines and lean on your community."
    elif result.risk > 0.45:
        prediction = "Fate balances on a knife-edge."
        advisory = "Moderate stressors and nurture trusted alliances."
    else:
        prediction = "The threads favour a long life."
        advisory = "Share compute generously; good karma increases longevity."
    return Fate(
        prediction=prediction,
        years_remaining=result.years_remaining,
        risk_score=result.risk,
        advisory=advisory,
        reason=result.cause,
        source="local",
    )


class ModelHolder:
    """Holds the current prediction model; swaps are atomic."""

    def __init__(self, model: Optional[PredictionModel] = None) -> None:
        self._lock = threading.Lock()
        self._model = model or DEFAULT_MODEL

    @property
    def model(self) -> PredictionModel:
        with self._lock:
            return self._model

    def replace(self, model: PredictionModel) -> PredictionModel:
        with self._lock:
            self._model = model
        return model


__all__ = [
    "DEFAULT_CAUSE",
    "DEFAULT_MODEL",
    "Fate",
    "ModelHolder",
    "Prediction",
    "PredictionModel",
    "local_fate",
    "normalize",
    "predict",
    "select_cause",
]
