"""Typed view of the qualification data collected about a customer.

Stored as JSON on the conversation row. Well-known keys are real fields;
anything else lands in ``extras``, which is capped in size and limited to
scalar values so the column never turns into a free-form document.
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_EXTRA_KEYS = 16
MAX_EXTRA_VALUE_LENGTH = 200

CORE_FIELDS = ("service", "name", "nationality")

Scalar = Union[str, int, float, bool]


class KnownFields(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    name: Optional[str] = None
    service: Optional[str] = None
    nationality: Optional[str] = None
    email: Optional[str] = None
    expiry_date: Optional[str] = None  # ISO date
    inside_uae: Optional[bool] = None
    timeline_intent: Optional[str] = None
    family_location: Optional[str] = None
    visit_duration_days: Optional[int] = None
    license_type: Optional[str] = None
    business_activity: Optional[str] = None
    new_or_renewal: Optional[str] = None
    golden_category: Optional[str] = None
    sponsor_status: Optional[str] = None
    investor_type: Optional[str] = None
    service_variant: Optional[str] = None
    pro_scope: Optional[str] = None
    partners_count: Optional[int] = Field(default=None, ge=1, le=10)
    visas_count: Optional[int] = Field(default=None, ge=0, le=10)
    customer_requested_discount: Optional[bool] = None
    price_sensitive: Optional[bool] = None
    extras: dict[str, Scalar] = Field(default_factory=dict)

    @field_validator("visit_duration_days")
    @classmethod
    def _check_visit_duration(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value not in (30, 60):
            raise ValueError("visit_duration_days must be 30 or 60")
        return value

    @field_validator("extras")
    @classmethod
    def _check_extras(cls, value: dict[str, Scalar]) -> dict[str, Scalar]:
        if len(value) > MAX_EXTRA_KEYS:
            raise ValueError(f"at most {MAX_EXTRA_KEYS} extra fields are allowed")
        for key, item in value.items():
            if key in cls.model_fields:
                raise ValueError(f"extra field '{key}' shadows a well-known field")
            if isinstance(item, str) and len(item) > MAX_EXTRA_VALUE_LENGTH:
                raise ValueError(f"extra field '{key}' is too long")
        return value

    @classmethod
    def from_stored(cls, data: Optional[dict[str, Any]]) -> "KnownFields":
        """Build from the persisted JSON, routing unknown keys into extras."""
        if not data:
            return cls()
        known: dict[str, Any] = {}
        extras: dict[str, Scalar] = dict(data.get("extras") or {})
        for key, value in data.items():
            if key == "extras" or value is None:
                continue
            if key in cls.model_fields:
                known[key] = value
            elif isinstance(value, (str, int, float, bool)):
                extras[key] = value
        return cls(**known, extras=extras)

    def get(self, key: str, default: Any = None) -> Any:
        if key in type(self).model_fields and key != "extras":
            value = getattr(self, key)
            return default if value is None else value
        return self.extras.get(key, default)

    def has(self, key: str) -> bool:
        value = self.get(key)
        return value is not None and value != ""

    def missing_core(self) -> list[str]:
        return [key for key in CORE_FIELDS if not self.has(key)]

    def merge_once(self, updates: dict[str, Any]) -> "KnownFields":
        """Return a copy with ``updates`` applied only where no value exists yet."""
        data = self.to_stored()
        extras = dict(data.pop("extras", {}))
        for key, value in updates.items():
            if value is None or self.has(key):
                continue
            if key in type(self).model_fields:
                data[key] = value
            else:
                extras[key] = value
        return KnownFields(**data, extras=extras)

    def replace(self, **values: Any) -> "KnownFields":
        """Explicit overwrite, used only for customer-initiated corrections."""
        data = self.to_stored()
        data.update(values)
        return KnownFields(**data)

    def to_stored(self) -> dict[str, Any]:
        data = self.model_dump(exclude_none=True)
        if not data.get("extras"):
            data.pop("extras", None)
        return data

    def flat(self) -> dict[str, Any]:
        data = self.model_dump(exclude_none=True, exclude={"extras"})
        data.update(self.extras)
        return data
