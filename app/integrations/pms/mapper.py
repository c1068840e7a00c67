"""Translation between PMS payloads and internal shapes.

Inbound: raw API dicts become typed ``External*`` models on ingestion; nothing
past this module handles untyped payloads.

Outbound: ``*Draft`` objects (built from internally-known identifiers) become
API payloads. Optional type names are resolved through a per-invocation
``MappingContext``:

1. the caller's explicit value,
2. the first entry of the matching "list types" call,
3. a literal default ("Cash" / "Adjustment").

Tier 3 means the practice has no types configured in the PMS, which is a
configuration gap an operator should see, so it is logged at WARNING and
reported back with the result.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from ...models.appointment import AppointmentStatus
from ...models.integration import EntityKind
from ...schemas.integration import (
    ExternalAddress,
    ExternalAdjustment,
    ExternalAppointment,
    ExternalAppointmentType,
    ExternalOperatory,
    ExternalPatient,
    ExternalPayment,
    ExternalProvider,
)
from .errors import MappingError, PmsAuthError, PmsError

logger = logging.getLogger(__name__)

DEFAULT_APPOINTMENT_MINUTES = 30
LITERAL_PAYMENT_TYPE = "Cash"
LITERAL_ADJUSTMENT_TYPE = "Adjustment"


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------

def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into a naive UTC datetime."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_wall_clock(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def price_to_cents(price: Any) -> int:
    """``{"amount": "12.50", "currency": "USD"}`` (or a bare number) to cents."""
    if isinstance(price, dict):
        price = price.get("amount")
    if price is None or price == "":
        return 0
    try:
        amount = Decimal(str(price))
    except InvalidOperation:
        return 0
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_amount(cents: int) -> float:
    return float(Decimal(cents) / 100)


def _external_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _numeric_id(value: Optional[str], field: str) -> int:
    try:
        return int(str(value))
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be a numeric PMS id, got {value!r}")


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------

def _derive_appointment_status(raw: Dict[str, Any]) -> str:
    if raw.get("cancelled"):
        return AppointmentStatus.CANCELLED.value
    if raw.get("patient_missed"):
        return AppointmentStatus.NO_SHOW.value
    if raw.get("checked_out"):
        return AppointmentStatus.COMPLETED.value
    if raw.get("checkin_at"):
        return AppointmentStatus.CHECKED_IN.value
    if raw.get("confirmed"):
        return AppointmentStatus.CONFIRMED.value
    return AppointmentStatus.SCHEDULED.value


def to_internal_patient(raw: Dict[str, Any]) -> ExternalPatient:
    bio = raw.get("bio") or {}
    phone = bio.get("cell_phone_number") or bio.get("phone_number") or bio.get("home_phone_number")

    address = None
    if bio.get("address_line_1"):
        street = ", ".join(part for part in (bio.get("address_line_1"), bio.get("address_line_2")) if part)
        address = ExternalAddress(
            street=street,
            city=bio.get("city") or "",
            state=bio.get("state") or "",
            zip=bio.get("zip_code") or "",
        )

    return ExternalPatient(
        pms_patient_id=_external_id(raw.get("id")) or "",
        first_name=raw.get("first_name") or "",
        last_name=raw.get("last_name") or "",
        date_of_birth=bio.get("date_of_birth"),
        gender=bio.get("gender"),
        email=raw.get("email"),
        phone=phone,
        address=address,
        is_active=not raw.get("inactive", False),
        updated_at=parse_timestamp(raw.get("updated_at")),
    )


def to_internal_appointment(raw: Dict[str, Any]) -> ExternalAppointment:
    start_raw = raw.get("start_time")
    if not start_raw:
        raise ValueError("start_time is required")
    start = _parse_wall_clock(start_raw)

    duration = DEFAULT_APPOINTMENT_MINUTES
    end_time = None
    if raw.get("end_time"):
        end = _parse_wall_clock(raw["end_time"])
        end_time = end.strftime("%H:%M")
        minutes = round((end - start).total_seconds() / 60)
        if minutes > 0:
            duration = minutes

    patient_id = _external_id(raw.get("patient_id"))
    provider_id = _external_id(raw.get("provider_id"))
    if not patient_id or not provider_id:
        raise ValueError("patient_id and provider_id are required")

    return ExternalAppointment(
        pms_appointment_id=_external_id(raw.get("id")) or "",
        pms_patient_id=patient_id,
        pms_provider_id=provider_id,
        pms_operatory_id=_external_id(raw.get("operatory_id")),
        date=start.strftime("%Y-%m-%d"),
        start_time=start.strftime("%H:%M"),
        end_time=end_time,
        duration_minutes=duration,
        status=_derive_appointment_status(raw),
        notes=raw.get("note"),
        updated_at=parse_timestamp(raw.get("updated_at")),
    )


def to_internal_payment(raw: Dict[str, Any]) -> ExternalPayment:
    patient_id = _external_id(raw.get("patient_id"))
    if not patient_id:
        raise ValueError("patient_id is required")
    return ExternalPayment(
        pms_payment_id=_external_id(raw.get("id")) or "",
        pms_patient_id=patient_id,
        amount_cents=price_to_cents(raw.get("payment_amount")),
        payment_type_id=raw.get("payment_type_id"),
        paid_at=raw.get("paid_at"),
        description=raw.get("description"),
        pms_claim_id=_external_id(raw.get("claim_id")),
        updated_at=parse_timestamp(raw.get("updated_at")),
    )


def to_internal_adjustment(raw: Dict[str, Any]) -> ExternalAdjustment:
    patient_id = _external_id(raw.get("patient_id"))
    if not patient_id:
        raise ValueError("patient_id is required")
    return ExternalAdjustment(
        pms_adjustment_id=_external_id(raw.get("id")) or "",
        pms_patient_id=patient_id,
        pms_provider_id=_external_id(raw.get("provider_id")),
        amount_cents=price_to_cents(raw.get("adjustment_amount")),
        adjustment_type_id=raw.get("adjustment_type_id"),
        adjusted_at=raw.get("adjusted_at"),
        description=raw.get("description"),
        updated_at=parse_timestamp(raw.get("updated_at")),
    )


def to_internal_provider(raw: Dict[str, Any]) -> ExternalProvider:
    name = raw.get("name") or " ".join(
        part for part in (raw.get("first_name"), raw.get("last_name")) if part
    )
    return ExternalProvider(
        pms_provider_id=_external_id(raw.get("id")) or "",
        name=name,
        is_active=not raw.get("inactive", False),
    )


def to_internal_operatory(raw: Dict[str, Any]) -> ExternalOperatory:
    return ExternalOperatory(
        pms_operatory_id=_external_id(raw.get("id")) or "",
        name=raw.get("name") or "",
        is_active=not raw.get("inactive", False),
    )


def to_internal_appointment_type(raw: Dict[str, Any]) -> ExternalAppointmentType:
    return ExternalAppointmentType(
        pms_appointment_type_id=_external_id(raw.get("id")) or "",
        name=raw.get("name") or "",
        duration_minutes=raw.get("duration") or DEFAULT_APPOINTMENT_MINUTES,
        is_active=raw.get("is_active") is not False,
    )


REFERENCE_MAPPERS: Dict[str, Callable[[Dict[str, Any]], Any]] = {
    "providers": to_internal_provider,
    "operatories": to_internal_operatory,
    "appointment_types": to_internal_appointment_type,
}


_INBOUND: Dict[EntityKind, Callable[[Dict[str, Any]], Any]] = {
    EntityKind.PATIENTS: to_internal_patient,
    EntityKind.APPOINTMENTS: to_internal_appointment,
    EntityKind.PAYMENTS: to_internal_payment,
    EntityKind.ADJUSTMENTS: to_internal_adjustment,
}


def _map_checked(entity: str, mapper: Callable[[Dict[str, Any]], Any], raw: Any):
    if not isinstance(raw, dict):
        raise MappingError(entity, None, f"expected an object, got {type(raw).__name__}")
    external_id = _external_id(raw.get("id"))
    if not external_id:
        raise MappingError(entity, None, "record has no id")
    try:
        return mapper(raw)
    except (ValidationError, ValueError, TypeError, KeyError, AttributeError) as e:
        raise MappingError(entity, external_id, str(e)) from e


def to_internal(kind: EntityKind, raw: Any):
    """Map one raw record of ``kind``; any shape problem becomes ``MappingError``."""
    return _map_checked(kind.value, _INBOUND[kind], raw)


def to_internal_reference(resource: str, raw: Any):
    """Same as ``to_internal`` for providers, operatories and appointment types."""
    return _map_checked(resource, REFERENCE_MAPPERS[resource], raw)


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------

class FallbackTier(str, Enum):
    EXPLICIT = "explicit"
    QUERIED = "queried"
    LITERAL = "literal"


@dataclass(frozen=True)
class ResolvedTypeName:
    name: str
    tier: FallbackTier


@dataclass(frozen=True)
class ExternalRefs:
    pms_patient_id: str
    pms_provider_id: Optional[str] = None
    pms_operatory_id: Optional[str] = None


@dataclass(frozen=True)
class AppointmentDraft:
    refs: ExternalRefs
    start_time: str
    duration_minutes: Optional[int] = None
    appointment_type_id: Optional[str] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class PaymentDraft:
    refs: ExternalRefs
    amount_cents: int
    type_name: Optional[str] = None
    paid_at: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class AdjustmentDraft:
    refs: ExternalRefs
    amount_cents: int
    type_name: Optional[str] = None
    description: Optional[str] = None


class MappingContext:
    """Per-invocation state for outbound mapping.

    Holds the session used for reference lookups and the resolved type names.
    Create one per invocation and drop it afterwards; resolved fallbacks must
    not outlive the invocation or leak to another configuration.
    """

    def __init__(self, session=None, config_id: Optional[int] = None):
        self.session = session
        self.config_id = config_id
        self._resolved: Dict[str, ResolvedTypeName] = {}
        self._lock = threading.Lock()

    def resolve_payment_type(self, explicit: Optional[str] = None) -> ResolvedTypeName:
        return self._resolve("payment", explicit, lambda c: c.list_payment_types(per_page=10), LITERAL_PAYMENT_TYPE)

    def resolve_adjustment_type(self, explicit: Optional[str] = None) -> ResolvedTypeName:
        return self._resolve("adjustment", explicit, lambda c: c.list_adjustment_types(per_page=10), LITERAL_ADJUSTMENT_TYPE)

    def _resolve(self, kind: str, explicit: Optional[str], list_types, literal: str) -> ResolvedTypeName:
        if explicit and explicit.strip():
            logger.debug("[pms_mapper] config_id=%s %s type tier=explicit name=%s", self.config_id, kind, explicit)
            return ResolvedTypeName(explicit.strip(), FallbackTier.EXPLICIT)

        with self._lock:
            cached = self._resolved.get(kind)
            if cached is not None:
                return cached

            resolved = None
            if self.session is not None:
                try:
                    page = self.session.call(list_types, description=f"list_{kind}_types")
                    first = page.data[0] if page.data else None
                    name = first.get("name") if isinstance(first, dict) else None
                    if name:
                        resolved = ResolvedTypeName(name, FallbackTier.QUERIED)
                        logger.info("[pms_mapper] config_id=%s %s type tier=queried name=%s", self.config_id, kind, name)
                except PmsAuthError:
                    raise
                except PmsError as e:
                    logger.warning("[pms_mapper] config_id=%s listing %s types failed: %s", self.config_id, kind, e)

            if resolved is None:
                resolved = ResolvedTypeName(literal, FallbackTier.LITERAL)
                logger.warning(
                    "[pms_mapper] config_id=%s %s type tier=literal name=%s; no %s types available in the PMS",
                    self.config_id, kind, literal, kind,
                )

            self._resolved[kind] = resolved
            return resolved


def to_external_appointment(draft: AppointmentDraft, context: MappingContext) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "patient_id": _numeric_id(draft.refs.pms_patient_id, "patient_id"),
        "provider_id": _numeric_id(draft.refs.pms_provider_id, "provider_id"),
        "start_time": draft.start_time,
    }
    if draft.refs.pms_operatory_id:
        payload["operatory_id"] = _numeric_id(draft.refs.pms_operatory_id, "operatory_id")
    if draft.appointment_type_id:
        payload["appointment_type_id"] = _numeric_id(draft.appointment_type_id, "appointment_type_id")
    if draft.duration_minutes:
        payload["duration"] = draft.duration_minutes
    if draft.note:
        payload["note"] = draft.note
    return payload


def to_external_payment(draft: PaymentDraft, context: MappingContext, transaction_id: str) -> Dict[str, Any]:
    if draft.amount_cents <= 0:
        raise ValueError("payment amount must be positive")
    type_name = context.resolve_payment_type(draft.type_name)
    payload: Dict[str, Any] = {
        "patient_id": _numeric_id(draft.refs.pms_patient_id, "patient_id"),
        "amount": cents_to_amount(draft.amount_cents),
        "type_name": type_name.name,
        "transaction_id": transaction_id,
    }
    if draft.paid_at:
        payload["paid_at"] = draft.paid_at
    if draft.description:
        payload["description"] = draft.description
    return payload


def to_external_adjustment(draft: AdjustmentDraft, context: MappingContext, transaction_id: str) -> Dict[str, Any]:
    if draft.amount_cents <= 0:
        raise ValueError("adjustment amount must be positive")
    provider_id = _numeric_id(draft.refs.pms_provider_id, "provider_id")
    type_name = context.resolve_adjustment_type(draft.type_name)
    amount = cents_to_amount(draft.amount_cents)
    payload: Dict[str, Any] = {
        "patient_id": _numeric_id(draft.refs.pms_patient_id, "patient_id"),
        "amount": amount,
        "transaction_id": transaction_id,
        "type_name": type_name.name,
        "provider_splits": {str(provider_id): _format_amount(amount)},
    }
    if draft.description:
        payload["description"] = draft.description
    return payload


def _format_amount(amount: float) -> str:
    return str(int(amount)) if amount == int(amount) else f"{amount:.2f}"
