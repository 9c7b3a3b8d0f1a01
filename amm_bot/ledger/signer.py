from __future__ import annotations

import hashlib
import json
import logging
from collections import deque
from typing import Any, Deque, Dict

from amm_bot.ledger.base import Signer, SubmitResult

LOGGER = logging.getLogger(__name__)

SUBMITTED_HISTORY = 500


class DryRunSigner(Signer):
    """Accepts every transaction without touching the network.

    Settlement references are deterministic hashes of the transaction body so
    repeated runs produce comparable logs. No metadata is returned, so
    consumers fall back to their quoted amounts. Only the most recent
    ``history`` submissions are kept in :attr:`submitted`.
    """

    def __init__(self, address: str, history: int = SUBMITTED_HISTORY) -> None:
        self.address = address
        self.submitted: Deque[Dict[str, Any]] = deque(maxlen=history)
        self._sequence = 0

    async def submit(self, tx: Dict[str, Any]) -> SubmitResult:
        self._sequence += 1
        body = {**tx, "Account": self.address, "Sequence": self._sequence}
        self.submitted.append(body)
        digest = hashlib.sha256(json.dumps(body, sort_keys=True, default=str).encode("utf-8")).hexdigest()
        ref = digest.upper()
        LOGGER.info("dry-run submit %s %s", tx.get("TransactionType"), ref[:12])
        return SubmitResult(success=True, settlement_ref=ref, engine_result="tesSUCCESS")
