from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from tagger.serve_order import set_winner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerRow:
    set_id: str
    set_number: int
    winner: Optional[str]
    sets_before_a: int
    sets_before_b: int
    sets_after_a: int
    sets_after_b: int


@dataclass(frozen=True)
class MatchResult:
    sets_a: int
    sets_b: int
    winner: Optional[str]
    ledger: List[LedgerRow]


def sets_ledger(set_records: List[Dict[str, Any]]) -> List[LedgerRow]:
    """
    Running sets-won count per side, ordered by set number.
    Only the persisted set winners matter; save order does not.
    """
    a = b = 0
    rows = []

    for record in sorted(set_records, key=lambda r: r["set_number"]):
        winner = record.get("winner")
        before_a, before_b = a, b

        if winner == "player_a":
            a += 1
        elif winner == "player_b":
            b += 1

        rows.append(
            LedgerRow(
                set_id=record["id"],
                set_number=record["set_number"],
                winner=winner,
                sets_before_a=before_a,
                sets_before_b=before_b,
                sets_after_a=a,
                sets_after_b=b,
            )
        )

    return rows


def finalize_match(store, match_id: str) -> MatchResult:
    """
    Recompute match aggregates from the stored sets and write them back.
    Safe to call any number of times.
    """
    ledger = sets_ledger(store.get_by_parent_id("sets", match_id))

    for row in ledger:
        store.update(
            "sets",
            row.set_id,
            {
                "sets_before_a": row.sets_before_a,
                "sets_before_b": row.sets_before_b,
                "sets_after_a": row.sets_after_a,
                "sets_after_b": row.sets_after_b,
            },
        )

    sets_a = ledger[-1].sets_after_a if ledger else 0
    sets_b = ledger[-1].sets_after_b if ledger else 0
    winner = set_winner(sets_a, sets_b)

    store.update("matches", match_id, {"sets_final_a": sets_a, "sets_final_b": sets_b, "winner": winner})

    logger.info(f"Match {match_id} finalized: {sets_a}-{sets_b}, winner={winner}")
    return MatchResult(sets_a=sets_a, sets_b=sets_b, winner=winner, ledger=ledger)
