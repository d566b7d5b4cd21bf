"""
Per-stage ledger of provider calls.

A stage redelivered by the queue asks the ledger before every provider call.
The token is a hash of (order, stage, logical stage, call content, slot), so
the same call in the same stage for the same order maps to one recorded
output no matter how many times the job runs.

The ledger is safe to use from the interior stage's worker threads: lookups
and new records go through an in-memory map guarded by a lock, and records
are written to the database by `flush()` on the stage's own session.
"""

import hashlib
import json
import logging
import threading
from typing import Callable

from sqlalchemy.orm import Session

from kcs.models.provider_call import ProviderCall

logger = logging.getLogger(__name__)


def call_token(order_id, stage: str, logical_stage: str, content: str, slot: int = 0) -> str:
    material = json.dumps(
        [str(order_id), stage, logical_stage, content, slot], ensure_ascii=False
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class CallLedger:
    def __init__(self, db: Session, order_id, stage: str):
        self.db = db
        self.order_id = order_id
        self.stage = stage
        self._lock = threading.Lock()
        self._known: dict[str, dict] = {}
        self._new: list[ProviderCall] = []
        self.hits = 0

        rows = (
            db.query(ProviderCall)
            .filter(ProviderCall.order_id == order_id, ProviderCall.stage == stage)
            .all()
        )
        for row in rows:
            self._known[row.token] = {
                "output": row.output,
                "provider": row.provider,
                "model": row.model,
                "meta": row.meta or {},
            }

    def run(
        self,
        logical_stage: str,
        content: str,
        call: Callable[[], dict],
        slot: int = 0,
    ) -> dict:
        """
        Return the recorded result for this call or perform it.

        `call` must return a dict with `output`, `provider`, `model` and an
        optional `meta` dict; that dict is what later hits return.
        """
        token = call_token(self.order_id, self.stage, logical_stage, content, slot)
        with self._lock:
            if token in self._known:
                self.hits += 1
                return self._known[token]

        result = call()
        record = {
            "output": result["output"],
            "provider": result.get("provider"),
            "model": result.get("model"),
            "meta": result.get("meta") or {},
        }
        with self._lock:
            if token not in self._known:
                self._known[token] = record
                self._new.append(
                    ProviderCall(
                        token=token,
                        order_id=self.order_id,
                        stage=self.stage,
                        logical_stage=logical_stage,
                        provider=record["provider"],
                        model=record["model"],
                        output=record["output"],
                        meta=record["meta"],
                    )
                )
            return self._known[token]

    def flush(self) -> int:
        """
        Add this run's new records to the session. The caller commits.

        Safe to call again after a rollback: the same rows are re-added.
        """
        with self._lock:
            rows = list(self._new)
        for row in rows:
            self.db.add(row)
        if rows:
            logger.debug(f"Recorded {len(rows)} provider calls for {self.stage}")
        return len(rows)
