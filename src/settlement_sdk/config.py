"""Versioned fee and runtime configuration.

Processor fee presets are named and versioned so that every estimate can be
traced back to the exact rates it used. Runtime settings are read from the
environment the same way the rest of the package reads ``STRIPE_API_KEY`` and
``DATABASE_URL``.
"""

import os
import logging
from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class ProcessorFeePreset(BaseModel):
    """Processor pricing used to estimate fees on a whole transaction."""
    name: str = Field(..., description="Preset identifier")
    version: int = Field(default=1, ge=1)
    percentage: Decimal = Field(..., ge=0, description="Rate applied to the transaction, e.g. 0.029")
    fixed: Decimal = Field(default=Decimal("0"), ge=0, description="Fixed fee in major units")
    international_surcharge: Decimal = Field(default=Decimal("0"), ge=0)
    description: Optional[str] = None

    model_config = {"frozen": True}


STRIPE_STANDARD_V1 = ProcessorFeePreset(
    name="stripe_standard_v1",
    percentage=Decimal("0.029"),
    fixed=Decimal("0.30"),
    description="2.9% + $0.30 per transaction",
)

STRIPE_AU_DOMESTIC_V1 = ProcessorFeePreset(
    name="stripe_au_domestic_v1",
    percentage=Decimal("0.027"),
    fixed=Decimal("0.05"),
    international_surcharge=Decimal("0.015"),
    description="2.7% + $0.05 for domestic cards, +1.5% for international cards",
)

OBSERVED_EFFECTIVE_V1 = ProcessorFeePreset(
    name="observed_effective_v1",
    percentage=Decimal("0.0396"),
    description="Flat 3.96% effective rate observed on settled payments",
)

PROCESSOR_FEE_PRESETS: Dict[str, ProcessorFeePreset] = {
    preset.name: preset
    for preset in (STRIPE_STANDARD_V1, STRIPE_AU_DOMESTIC_V1, OBSERVED_EFFECTIVE_V1)
}

DEFAULT_PRESET_NAME = STRIPE_STANDARD_V1.name


def get_processor_fee_preset(name: str) -> ProcessorFeePreset:
    """Look up a processor fee preset by name.

    Raises:
        ValueError: If the preset is not registered.
    """
    preset = PROCESSOR_FEE_PRESETS.get(name)
    if preset is None:
        raise ValueError(
            f"Unknown processor fee preset: {name}. "
            f"Available presets: {', '.join(sorted(PROCESSOR_FEE_PRESETS))}"
        )
    return preset


class FeeSchedule(BaseModel):
    """Rates used when booking fees have to be estimated locally."""
    version: str = Field(default="2024-01", description="Schedule version label")
    service_rate: Decimal = Field(default=Decimal("0.12"), ge=0)
    processing_rate: Decimal = Field(default=Decimal("0.0175"), ge=0)
    processing_fixed: Decimal = Field(default=Decimal("0.30"), ge=0)
    processor_preset: ProcessorFeePreset = Field(default=STRIPE_STANDARD_V1)

    model_config = {"frozen": True}


class ReconcilerSettings(BaseModel):
    """Behaviour of the fee reconciliation batch."""
    tolerance: Decimal = Field(default=Decimal("0.01"), ge=0)
    unit_corruption_ratio: Decimal = Field(default=Decimal("10"), gt=1)
    call_delay_ms: int = Field(default=200)
    batch_limit: int = Field(default=50, ge=1)
    estimate_when_ledger_missing: bool = False
    call_timeout_seconds: float = Field(default=15.0, gt=0)

    @field_validator("call_delay_ms")
    @classmethod
    def clamp_delay(cls, v: int) -> int:
        # Pacing stays inside the window the ledger tolerates.
        return max(100, min(300, v))


class RefundSettings(BaseModel):
    """Behaviour of the refund orchestrator."""
    call_timeout_seconds: float = Field(default=15.0, gt=0)


class SettlementSettings(BaseModel):
    """Top-level settings bundle."""
    fee_schedule: FeeSchedule = Field(default_factory=FeeSchedule)
    reconciler: ReconcilerSettings = Field(default_factory=ReconcilerSettings)
    refunds: RefundSettings = Field(default_factory=RefundSettings)

    @classmethod
    def from_env(cls) -> "SettlementSettings":
        """Build settings from environment variables.

        Recognized variables:
            SETTLEMENT_FEE_PRESET: Processor fee preset name.
            SETTLEMENT_FEE_SCHEDULE_VERSION: Label of the active fee schedule.
            RECONCILE_DELAY_MS: Pause between ledger calls.
            RECONCILE_BATCH_LIMIT: Maximum bookings per run.
            RECONCILE_ESTIMATE_MISSING: "true" to write estimates when the ledger has no data.
            LEDGER_CALL_TIMEOUT: Timeout for each processor call, in seconds.
            RECONCILE_CALL_TIMEOUT: Timeout for the reconciler's ledger reads
                (defaults to LEDGER_CALL_TIMEOUT).

        Raises:
            ValueError: If the preset name is unknown or a number cannot be parsed.
        """
        preset = get_processor_fee_preset(
            os.getenv("SETTLEMENT_FEE_PRESET", DEFAULT_PRESET_NAME)
        )
        schedule_kwargs = {"processor_preset": preset}
        schedule_version = os.getenv("SETTLEMENT_FEE_SCHEDULE_VERSION")
        if schedule_version:
            schedule_kwargs["version"] = schedule_version

        ledger_timeout = os.getenv("LEDGER_CALL_TIMEOUT", "15")
        reconciler = ReconcilerSettings(
            call_delay_ms=int(os.getenv("RECONCILE_DELAY_MS", "200")),
            batch_limit=int(os.getenv("RECONCILE_BATCH_LIMIT", "50")),
            estimate_when_ledger_missing=os.getenv(
                "RECONCILE_ESTIMATE_MISSING", "false"
            ).lower() in ("1", "true", "yes"),
            call_timeout_seconds=float(os.getenv("RECONCILE_CALL_TIMEOUT", ledger_timeout)),
        )
        refunds = RefundSettings(
            call_timeout_seconds=float(ledger_timeout),
        )

        logger.debug(f"Loaded settlement settings with fee preset {preset.name}")
        return cls(
            fee_schedule=FeeSchedule(**schedule_kwargs),
            reconciler=reconciler,
            refunds=refunds,
        )
