"""
Transaction merge and dedup
Reconciles a historical snapshot with live events into one ordered feed
"""

import math
from typing import Any, Dict, Iterable, List, Optional

from models import Transaction


def merge(historical: Iterable[Transaction], live: Iterable[Transaction]) -> List[Transaction]:
    """
    Union of live and historical transfers, newest first

    Dedup is by (tx_hash, log_index); the live copy wins. Pure and idempotent:
    merge(merge(h, l), l) == merge(h, l).
    """
    seen = set()
    merged: List[Transaction] = []
    for tx in list(live) + list(historical):
        if tx.dedup_key in seen:
            continue
        seen.add(tx.dedup_key)
        merged.append(tx)

    merged.sort(key=lambda tx: tx.sort_key, reverse=True)
    return merged


def filter_transactions(
    transactions: Iterable[Transaction],
    start: Optional[int] = None,
    end: Optional[int] = None,
    token_addresses: Optional[Iterable[str]] = None,
) -> List[Transaction]:
    """Keep transfers inside [start, end] (unix seconds) and of the given tokens"""
    tokens = {address.lower() for address in token_addresses} if token_addresses else None
    result = []
    for tx in transactions:
        if start is not None and (tx.timestamp is None or tx.timestamp < start):
            continue
        if end is not None and (tx.timestamp is None or tx.timestamp > end):
            continue
        if tokens is not None and tx.token.address.lower() not in tokens:
            continue
        result.append(tx)
    return result


def paginate(transactions: List[Transaction], page: int = 1, per_page: int = 20) -> Dict[str, Any]:
    if page < 1 or per_page < 1:
        raise ValueError("page and per_page must be positive")
    total = len(transactions)
    offset = (page - 1) * per_page
    return {
        "items": transactions[offset:offset + per_page],
        "page": page,
        "per_page": per_page,
        "total": total,
        "pages": math.ceil(total / per_page) if total else 0,
    }
