"""Reading realized amounts out of transaction metadata.

Every amount is derived from the account's own balance changes in the
``AffectedNodes`` of a validated transaction:

* native: ``AccountRoot`` ``Balance`` (drops), final minus previous;
* issued and LP tokens: the ``RippleState`` line between the account and
  the issuer (for LP tokens the issuer is the AMM account). A line's
  ``Balance`` is held by its low side, so the sign flips when the account is
  the high side.

Created nodes start from zero and deleted nodes end at zero.
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, Optional, Tuple

from amm_bot.models import DROPS_PER_NATIVE, NATIVE_CURRENCY, Amount, parse_amount


def transaction_succeeded(metadata: Dict[str, Any]) -> bool:
    return metadata.get("TransactionResult") == "tesSUCCESS"


def _iter_nodes(metadata: Dict[str, Any]) -> Iterator[Tuple[str, Dict[str, Any]]]:
    for wrapper in metadata.get("AffectedNodes") or []:
        if not isinstance(wrapper, dict):
            continue
        for kind in ("CreatedNode", "ModifiedNode", "DeletedNode"):
            node = wrapper.get(kind)
            if isinstance(node, dict):
                yield kind, node


def _node_fields(kind: str, node: Dict[str, Any]) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """(previous, final) field sets; None means "balance was zero"."""
    if kind == "CreatedNode":
        return None, node.get("NewFields") or {}
    final = node.get("FinalFields") or {}
    previous = node.get("PreviousFields") or {}
    if kind == "DeletedNode":
        return (previous if "Balance" in previous else final), None
    if "Balance" not in previous:
        return final, final
    return previous, final


def _value(fields: Optional[Dict[str, Any]]) -> float:
    if not fields:
        return 0.0
    balance = fields.get("Balance")
    if isinstance(balance, dict):
        return float(balance.get("value", 0) or 0)
    if balance is None:
        return 0.0
    return float(balance)


def balance_changes(metadata: Dict[str, Any], account: str) -> Dict[str, float]:
    """Net balance change per asset key (``XRP`` or ``CUR:issuer``) for ``account``."""
    changes: Dict[str, float] = {}
    for kind, node in _iter_nodes(metadata):
        entry_type = node.get("LedgerEntryType")
        previous, final = _node_fields(kind, node)
        reference = final if final is not None else previous or {}
        if entry_type == "AccountRoot":
            if reference.get("Account") != account:
                continue
            delta = (_value(final) - _value(previous)) / DROPS_PER_NATIVE
            if delta:
                changes[NATIVE_CURRENCY] = changes.get(NATIVE_CURRENCY, 0.0) + delta
        elif entry_type == "RippleState":
            low = (reference.get("LowLimit") or {}).get("issuer")
            high = (reference.get("HighLimit") or {}).get("issuer")
            if account not in (low, high):
                continue
            balance = reference.get("Balance") or {}
            currency = balance.get("currency") if isinstance(balance, dict) else None
            if not currency:
                continue
            counterparty = high if account == low else low
            sign = 1.0 if account == low else -1.0
            delta = sign * (_value(final) - _value(previous))
            if delta:
                key = f"{currency}:{counterparty}"
                changes[key] = changes.get(key, 0.0) + delta
    return changes


def lp_tokens_received(metadata: Dict[str, Any], account: str, lp_currency: str, amm_account: str) -> float:
    """Increase of the account's LP-token line with the AMM account."""
    delta = balance_changes(metadata, account).get(f"{lp_currency}:{amm_account}", 0.0)
    return max(0.0, delta)


def lp_tokens_redeemed(metadata: Dict[str, Any], account: str, lp_currency: str, amm_account: str) -> float:
    delta = balance_changes(metadata, account).get(f"{lp_currency}:{amm_account}", 0.0)
    return max(0.0, -delta)


def asset_received(metadata: Dict[str, Any], account: str, asset_key: str, fee: float = 0.0) -> float:
    """Amount of one asset credited to ``account``.

    For the native asset the transaction fee is added back, since it was
    debited from the same balance.
    """
    delta = balance_changes(metadata, account).get(asset_key, 0.0)
    if asset_key == NATIVE_CURRENCY:
        delta += fee
    return max(0.0, delta)


def delivered_amount(metadata: Dict[str, Any]) -> Optional[Amount]:
    raw = metadata.get("delivered_amount", metadata.get("DeliveredAmount"))
    if raw is None or raw == "unavailable":
        return None
    return parse_amount(raw)


def fee_paid(tx: Dict[str, Any]) -> float:
    """Fee of a submitted transaction in whole native units."""
    raw = tx.get("Fee")
    if raw is None:
        return 0.0
    return float(raw) / DROPS_PER_NATIVE
