"""
Audit trail of executed rebalances.

Every executed hedge adjustment produces one `AuditRecord`.  Records
are delivered on a best-effort basis: each sink retries a bounded
number of times with exponential backoff and then gives up with a log
line.  A failed delivery never interrupts the trading cycle.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from ..config.schema import AuditConfig

logger = logging.getLogger(__name__)


@dataclass
class AuditRecord:
    """One executed rebalance with its market and P&L context."""
    position_id: int
    timestamp: str
    coin: str
    trigger: str
    trigger_reason: str
    is_emergency: bool
    from_size: float
    to_size: float
    from_notional: float
    to_notional: float
    price: float
    range_status: str
    total_pos_usd: float
    funding_rate: float
    net_delta: float
    hl_equity: float
    hedge_ratio: float
    daily_count: int
    action: Optional[str] = None
    avg_px: Optional[float] = None
    executed_sz: Optional[float] = None
    trade_value_usd: Optional[float] = None
    fee_usd: float = 0.0
    trade_pnl_usd: float = 0.0
    token0_symbol: str = ''
    token0_amount: float = 0.0
    token1_symbol: str = ''
    token1_amount: float = 0.0
    pnl_virtual_usd: float = 0.0
    pnl_virtual_pct: float = 0.0
    pnl_realized_usd: float = 0.0
    pnl_unrealized_usd: float = 0.0
    pnl_lp_fees_usd: float = 0.0
    pnl_funding_usd: float = 0.0
    pnl_hl_fees_usd: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PermanentAuditError(Exception):
    """A delivery error that will not improve on retry (schema, auth)."""


class AuditSink(ABC):
    """Destination for audit records with bounded retries."""

    def __init__(self, max_retries: int = 4, retry_base_seconds: float = 2.0) -> None:
        self.max_retries = max(1, max_retries)
        self.retry_base_seconds = retry_base_seconds

    @abstractmethod
    def _write(self, record: AuditRecord) -> None:
        """Deliver one record.  Raise `PermanentAuditError` to stop retrying."""

    async def send(self, record: AuditRecord) -> bool:
        """Deliver `record`, returning `False` if every attempt failed."""
        for attempt in range(1, self.max_retries + 1):
            try:
                await asyncio.to_thread(self._write, record)
                return True
            except PermanentAuditError as exc:
                logger.error("[Audit] record for pos#%s rejected: %s", record.position_id, exc)
                return False
            except (OSError, requests.RequestException) as exc:
                if attempt < self.max_retries:
                    delay = self.retry_base_seconds * 2 ** (attempt - 1)
                    logger.warning(
                        "[Audit] delivery failed (attempt %d/%d): %s, retrying in %.1fs",
                        attempt, self.max_retries, exc, delay,
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error("[Audit] delivery failed after %d attempts: %s", self.max_retries, exc)
        return False


class NullAuditSink(AuditSink):
    def _write(self, record: AuditRecord) -> None:
        pass


class JsonlAuditSink(AuditSink):
    """Append each record as one JSON line."""

    def __init__(self, path: str, max_retries: int = 4, retry_base_seconds: float = 2.0) -> None:
        super().__init__(max_retries, retry_base_seconds)
        self.path = Path(path)

    def _write(self, record: AuditRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")


class SupabaseAuditSink(AuditSink):
    """Insert records into a Supabase table through its REST endpoint."""

    def __init__(
        self,
        url: str,
        key: str,
        table: str = "rebalances",
        max_retries: int = 4,
        retry_base_seconds: float = 2.0,
        timeout: float = 10.0,
    ) -> None:
        super().__init__(max_retries, retry_base_seconds)
        self.endpoint = f"{url.rstrip('/')}/rest/v1/{table}"
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
            "Prefer": "return=minimal",
        })

    def _write(self, record: AuditRecord) -> None:
        resp = self.session.post(self.endpoint, json=record.to_dict(), timeout=self.timeout)
        if 400 <= resp.status_code < 500:
            raise PermanentAuditError(f"HTTP {resp.status_code}: {resp.text[:200]}")
        resp.raise_for_status()
        logger.info("[Audit] record inserted for pos#%s", record.position_id)


def create_audit_sink(config: AuditConfig) -> AuditSink:
    """Pick the sink enabled by `config`; Supabase wins over the JSONL file."""
    if config.supabase_url and config.supabase_key:
        logger.info("[Audit] Supabase sink enabled (table=%s)", config.table)
        return SupabaseAuditSink(
            config.supabase_url, config.supabase_key, config.table,
            config.max_retries, config.retry_base_seconds,
        )
    if config.jsonl_path:
        return JsonlAuditSink(config.jsonl_path, config.max_retries, config.retry_base_seconds)
    logger.warning("[Audit] no sink configured: rebalance audit disabled")
    return NullAuditSink()
