"""FastAPI dependencies shared by the routers."""

import os
from typing import Optional

from fastapi import Header

from .config import SettlementSettings
from .ledger import LedgerClientBase, get_ledger_client


def get_settings() -> SettlementSettings:
    return SettlementSettings.from_env()


def get_ledger() -> LedgerClientBase:
    """Ledger client selected by LEDGER_PROVIDER (default: stripe)."""
    return get_ledger_client(os.getenv("LEDGER_PROVIDER", "stripe"))


async def get_actor(x_operator_id: Optional[str] = Header(None)) -> str:
    """Operator recorded on audit entries; requests without the header are attributed to "api"."""
    return x_operator_id or "api"
