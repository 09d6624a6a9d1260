"""Best-effort audit sink.

Synopsis:
Forwards committed ledger operations to the external append-only audit
service ("blockchain") and reads them back for traceability screens. Delivery
happens after commit on a background worker; any failure is logged and never
reaches the caller's transaction.

Glossary:
- Notice: one committed operation to forward (kind, batch code, parties, metadata).
- Address: SHA-256 hex digest derived from a party id, used as sender/recipient.
- Mode: ``thread`` (queue + daemon worker), ``inline`` (post on the caller's
  thread after commit) or ``disabled``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

import requests
from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

# Audit kinds
AUDIT_HARVEST = "HARVEST"
AUDIT_BATCH_SPLIT = "BATCH_SPLIT"
AUDIT_TRANSFER = "TRANSFER"
AUDIT_DISTRIBUTOR_PURCHASE = "DISTRIBUTOR_PURCHASE"
AUDIT_CONSUMER_PURCHASE = "CONSUMER_PURCHASE"
AUDIT_RETURN = "BATCH_RETURNED"
AUDIT_ORDER_CREATED = "ORDER_CREATED"
AUDIT_SHIPMENT_ASSIGNED = "SHIPMENT_ASSIGNED"
AUDIT_SHIPMENT_UPDATE = "SHIPMENT_UPDATE"
AUDIT_DELIVERY_CONFIRMED = "DELIVERY_CONFIRMED"
AUDIT_EVENT_RECORDED = "EVENT_RECORDED"

_ADDRESS_NAMESPACE = "agriledger"
_STOP = object()


@dataclass(frozen=True)
class AuditNotice:
    kind: str
    batch_code: str
    actor_id: str
    counterparty_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def party_address(party_id: Any) -> str:
    """Deterministic 64-char hex address for a party id."""
    return hashlib.sha256(f"{_ADDRESS_NAMESPACE}-{party_id}".encode("utf-8")).hexdigest()


def build_payload(notice: AuditNotice) -> Dict[str, Any]:
    recipient = notice.counterparty_id if notice.counterparty_id is not None else notice.actor_id
    return {
        "sender": party_address(notice.actor_id),
        "recipient": party_address(recipient),
        "batch_id": notice.batch_code,
        "event_type": notice.kind,
        "data": json.dumps(notice.metadata or {}, default=str, sort_keys=True),
    }


# --- AuditSink ---
# Purpose: Deliver notices to the external audit service without blocking callers.
class AuditSink:
    """Fire-and-forget forwarder with a bounded in-memory queue."""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout: float = 5.0,
        read_timeout: float = 10.0,
        health_timeout: float = 3.0,
        mode: str = "thread",
        queue_size: int = 1000,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout
        self.read_timeout = read_timeout
        self.health_timeout = health_timeout
        self.mode = mode if self.base_url else "disabled"
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max(1, queue_size))
        self._worker: Optional[threading.Thread] = None
        self._worker_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "AuditSink":
        return cls(
            base_url=config.get("AUDIT_SINK_URL"),
            timeout=float(config.get("AUDIT_SINK_TIMEOUT_SECONDS", 5.0)),
            read_timeout=float(config.get("AUDIT_SINK_READ_TIMEOUT_SECONDS", 10.0)),
            health_timeout=float(config.get("AUDIT_SINK_HEALTH_TIMEOUT_SECONDS", 3.0)),
            mode=config.get("AUDIT_SINK_MODE", "thread"),
            queue_size=int(config.get("AUDIT_SINK_QUEUE_SIZE", 1000)),
        )

    @property
    def enabled(self) -> bool:
        return self.mode != "disabled"

    def submit(self, notice: AuditNotice) -> Optional[str]:
        """Hand a notice over for delivery.

        Returns a warning message when the notice is known to be lost
        (inline delivery failed, or the queue is full), otherwise None.
        """
        if not self.enabled:
            logger.debug("Audit sink disabled; dropping %s for %s", notice.kind, notice.batch_code)
            return None

        if self.mode == "inline":
            return self._deliver(notice)

        self._ensure_worker()
        try:
            self._queue.put_nowait(notice)
        except queue.Full:
            message = f"Audit queue full; {notice.kind} for {notice.batch_code} was not forwarded"
            logger.warning("%s", message)
            return message
        return None

    def flush(self) -> None:
        """Block until every queued notice has been attempted."""
        if self._worker is not None:
            self._queue.join()

    def shutdown(self) -> None:
        with self._worker_lock:
            worker = self._worker
            self._worker = None
        if worker is None or not worker.is_alive():
            return
        self._queue.put(_STOP)
        worker.join(timeout=self.timeout + 1)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def fetch_blocks(self) -> List[Dict[str, Any]]:
        if not self.base_url:
            return []
        try:
            response = requests.get(f"{self.base_url}/blocks", timeout=self.read_timeout)
            response.raise_for_status()
            blocks = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Failed to fetch audit blocks: %s", exc)
            return []
        return blocks if isinstance(blocks, list) else []

    def transactions_for_batches(self, batch_codes: Iterable[str]) -> Dict[str, List[Dict[str, Any]]]:
        """Group audit transactions by batch code, annotated with their block."""
        wanted = list(dict.fromkeys(batch_codes))
        grouped: Dict[str, List[Dict[str, Any]]] = {code: [] for code in wanted}
        if not wanted:
            return grouped

        for block in self.fetch_blocks():
            transactions = block.get("transactions") if isinstance(block, dict) else None
            if not isinstance(transactions, list):
                continue
            for tx in transactions:
                if not isinstance(tx, dict) or tx.get("batch_id") not in grouped:
                    continue
                grouped[tx["batch_id"]].append(
                    {
                        **tx,
                        "block_index": block.get("index"),
                        "block_hash": block.get("hash"),
                        "block_timestamp": block.get("timestamp"),
                        "previous_hash": block.get("previous_hash"),
                    }
                )
        return grouped

    def transactions_for_batch(self, batch_code: str) -> List[Dict[str, Any]]:
        return self.transactions_for_batches([batch_code])[batch_code]

    def is_healthy(self) -> bool:
        if not self.base_url:
            return False
        try:
            response = requests.get(f"{self.base_url}/blocks", timeout=self.health_timeout)
        except requests.RequestException:
            return False
        return response.status_code == 200

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _deliver(self, notice: AuditNotice) -> Optional[str]:
        payload = build_payload(notice)
        try:
            response = requests.post(f"{self.base_url}/transactions", json=payload, timeout=self.timeout)
            response.raise_for_status()
            logger.debug("Audit notice %s for %s delivered", notice.kind, notice.batch_code)
            return None
        except requests.RequestException as exc:
            message = f"Audit sink delivery failed for {notice.kind} on {notice.batch_code}: {exc}"
            logger.warning(
                "%s",
                message,
                extra={"status_code": getattr(getattr(exc, "response", None), "status_code", None)},
            )
            return message

    def _ensure_worker(self) -> None:
        with self._worker_lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._run, name="agriledger-audit-sink", daemon=True)
            self._worker.start()

    def _run(self) -> None:
        while True:
            notice = self._queue.get()
            try:
                if notice is _STOP:
                    return
                self._deliver(notice)
            except Exception:
                logger.exception("Audit sink worker failed on %s", getattr(notice, "kind", notice))
            finally:
                self._queue.task_done()


def get_audit_sink() -> AuditSink:
    """Return the app's sink, or a disabled one outside an app context."""
    if has_app_context():
        sink = current_app.extensions.get("audit_sink")
        if sink is None:
            sink = AuditSink.from_config(current_app.config)
            current_app.extensions["audit_sink"] = sink
        return sink
    return AuditSink(mode="disabled")
