"""
Incremental persistence for a tagging session.

Every write goes through an append-only command log first and is then
replayed against the store. Commands address records by ordinal
((set, rally_index) and (rally, shot_index)), never by list position, and
each replay is a create-or-update, so replaying twice or after a crashed
attempt converges to the same records.

Store failures never escape: they are logged, the command stays pending
for the next flush, and SaveStatus reports the problem.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from tagger.exceptions import StoreError
from tagger.models import Rally, SetProgress, Shot
from tagger.questions import annotation_to_columns, is_answered

logger = logging.getLogger(__name__)

COMMAND_KINDS = ("rally", "shot", "update_shot", "set", "delete_rally")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =========================================================
# RECORD BUILDERS
# =========================================================

def rally_fields(rally: Rally) -> Dict[str, Any]:
    return {
        "rally_index": rally.index,
        "server": rally.server,
        "receiver": rally.receiver,
        "end_condition": rally.end_condition,
        "is_error": rally.is_error,
        "is_scoring": rally.is_scoring,
        "winner": rally.winner,
        "point_end_type": rally.point_end_type,
        "error_placement": rally.error_placement,
        "score_before_a": rally.score_before.player_a,
        "score_before_b": rally.score_before.player_b,
        "score_after_a": rally.score_after.player_a,
        "score_after_b": rally.score_after.player_b,
        "timestamp_start": rally.timestamp_start,
        "timestamp_end": rally.end_timestamp,
    }


def shot_fields(shot: Shot, rally: Rally) -> Dict[str, Any]:
    fields = {
        "shot_index": shot.index,
        "striker": shot.striker,
        "timestamp_start": shot.timestamp,
        "timestamp_end": shot.timestamp_end,
        "shot_label": shot.label,
        "role": shot.role,
        "is_serve": shot.is_serve,
        "is_receive": shot.is_receive,
        "is_last_shot": shot.is_last_shot,
        "is_tagged": is_answered(shot),
    }
    fields.update(annotation_to_columns(shot, rally))
    return fields


# =========================================================
# COMMAND LOG
# =========================================================

@dataclass
class Command:
    seq: int
    kind: str
    fields: Dict[str, Any] = field(default_factory=dict)
    rally_index: Optional[int] = None
    shot_index: Optional[int] = None
    status: str = "pending"  # pending | done | cancelled
    attempts: int = 0
    record_id: Optional[str] = None
    last_error: Optional[str] = None


class CommandLog:
    """Append-only, replayed strictly in order."""

    def __init__(self):
        self._commands: List[Command] = []

    def append(self, kind: str, **kwargs) -> Command:
        if kind not in COMMAND_KINDS:
            raise ValueError(f"Invalid command kind: {kind}")

        command = Command(seq=len(self._commands) + 1, kind=kind, **kwargs)
        self._commands.append(command)
        return command

    def pending(self) -> List[Command]:
        return [c for c in self._commands if c.status == "pending"]

    def cancel_rally(self, rally_index: int) -> List[Command]:
        """Cancel every pending command that touches the rally."""
        cancelled = []
        for c in self._commands:
            if c.status == "pending" and c.rally_index == rally_index and c.kind != "delete_rally":
                c.status = "cancelled"
                cancelled.append(c)
        return cancelled

    def __len__(self):
        return len(self._commands)

    def __iter__(self):
        return iter(list(self._commands))


@dataclass
class SaveStatus:
    is_saving: bool = False
    last_saved_at: Optional[str] = None
    last_error: Optional[str] = None
    pending: int = 0


# =========================================================
# ADAPTER
# =========================================================

class PersistenceAdapter:
    """
    Mirrors one set's tagging state into a store.

    The tagging machines call commit_* / update_* / delete_* after the
    in-memory change is done; nothing here rolls that change back.
    """

    def __init__(self, store, set_id: str, progress: Optional[SetProgress] = None, auto_flush: bool = True):
        self.store = store
        self.set_id = set_id
        self.progress = progress or SetProgress()
        self.auto_flush = auto_flush

        self.log = CommandLog()
        self.status = SaveStatus()

        self._rallies: Dict[int, Rally] = {}

    # ---------------------------------------------------------
    # Contract
    # ---------------------------------------------------------

    def track(self, rallies: List[Rally]):
        """Register rallies that are already stored (resume)."""
        for rally in rallies:
            self._rallies[rally.index] = rally

    def commit_rally(self, rally: Rally) -> Optional[str]:
        self._rallies[rally.index] = rally
        command = self.log.append("rally", rally_index=rally.index, fields=rally_fields(rally))
        return self._maybe_flush(command)

    def commit_shot(self, rally_index: int, shot: Shot) -> Optional[str]:
        rally = self._rally(rally_index)
        command = self.log.append(
            "shot",
            rally_index=rally_index,
            shot_index=shot.index,
            fields=shot_fields(shot, rally),
        )
        return self._maybe_flush(command)

    def update_shot(self, rally_index: int, shot_index: int, fields: Dict[str, Any]) -> Optional[str]:
        command = self.log.append(
            "update_shot",
            rally_index=rally_index,
            shot_index=shot_index,
            fields=dict(fields),
        )
        return self._maybe_flush(command)

    def update_rally(self, rally: Rally) -> Optional[str]:
        """Re-write rally-level derived fields (point end type after Phase 2)."""
        self._rallies[rally.index] = rally
        command = self.log.append("rally", rally_index=rally.index, fields=rally_fields(rally))
        return self._maybe_flush(command)

    def update_set(self, **fields) -> Optional[str]:
        command = self.log.append("set", fields=fields)
        return self._maybe_flush(command)

    def advance_progress(self, phase: str, **marker) -> SetProgress:
        """
        Move the set's progress marker. `marker` takes SetProgress field
        names; anything else is written to the set record as-is.
        """
        progress_keys = {"last_rally_index", "last_shot_index", "total_rallies", "total_shots"}
        changes = {k: v for k, v in marker.items() if k in progress_keys}
        extra = {k: v for k, v in marker.items() if k not in progress_keys}

        self.progress = replace(self.progress, phase=phase, **changes)

        fields = self.progress.to_fields()
        fields.update(extra)
        self.update_set(**fields)

        logger.info(f"Set {self.set_id} progress -> {phase}")
        return self.progress

    def delete_rally(self, rally_index: int):
        """
        Compensating delete for an undone rally.

        Commands still waiting in the log are cancelled instead of being
        written and then deleted. A delete is queued unless the rally's own
        create was among the cancelled commands and the store holds no
        record for the ordinal; a failed write may still have left one.
        """
        self._rallies.pop(rally_index, None)
        cancelled = self.log.cancel_rally(rally_index)

        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} pending command(s) for rally {rally_index}")

        create_cancelled = any(c.kind == "rally" for c in cancelled)

        if not create_cancelled or self._may_be_stored(rally_index):
            command = self.log.append("delete_rally", rally_index=rally_index)
            self._maybe_flush(command)

        self.status.pending = len(self.log.pending())

    # ---------------------------------------------------------
    # Flush
    # ---------------------------------------------------------

    def flush(self) -> bool:
        """Replay pending commands in order; stop at the first failure."""
        pending = self.log.pending()
        if not pending:
            return True

        self.status.is_saving = True
        ok = True

        try:
            for command in pending:
                command.attempts += 1
                try:
                    command.record_id = self._replay(command)
                except StoreError as e:
                    command.last_error = str(e)
                    self.status.last_error = str(e)
                    logger.warning(
                        f"Save failed for {command.kind} "
                        f"(rally={command.rally_index}, shot={command.shot_index}): {e}"
                    )
                    ok = False
                    break

                command.status = "done"
        finally:
            self.status.is_saving = False
            self.status.pending = len(self.log.pending())

        if ok:
            self.status.last_saved_at = utc_now()
            self.status.last_error = None

        return ok

    def bulk_save(self, rallies: List[Rally]) -> int:
        """
        Re-queue every rally and shot whose ordinal is missing from the
        store, then flush. Returns the number of commands queued; 0 when
        the store cannot be read, with the error left in `status`.
        """
        try:
            missing = self._missing_records(rallies)
        except StoreError as e:
            self.status.last_error = str(e)
            logger.warning(f"Bulk save for set {self.set_id} cannot read the store: {e}")
            return 0

        for rally, shot in missing:
            self._rallies[rally.index] = rally
            if shot is None:
                self.log.append("rally", rally_index=rally.index, fields=rally_fields(rally))
            else:
                self.log.append(
                    "shot",
                    rally_index=rally.index,
                    shot_index=shot.index,
                    fields=shot_fields(shot, rally),
                )

        logger.info(f"Bulk save queued {len(missing)} command(s) for set {self.set_id}")
        self.flush()
        return len(missing)

    def _missing_records(self, rallies: List[Rally]) -> List[Tuple[Rally, Optional[Shot]]]:
        """(rally, None) for a missing rally record, (rally, shot) for a missing shot."""
        stored = {r["rally_index"]: r for r in self.store.get_by_parent_id("rallies", self.set_id)}
        missing = []

        for rally in rallies:
            record = stored.get(rally.index)

            if record is None:
                missing.append((rally, None))
                stored_shots = set()
            else:
                stored_shots = {s["shot_index"] for s in self.store.get_by_parent_id("shots", record["id"])}

            missing.extend((rally, shot) for shot in rally.shots if shot.index not in stored_shots)

        return missing

    # ---------------------------------------------------------
    # Internals
    # ---------------------------------------------------------

    def _maybe_flush(self, command: Command) -> Optional[str]:
        self.status.pending = len(self.log.pending())
        if self.auto_flush:
            self.flush()
        return command.record_id if command.status == "done" else None

    def _may_be_stored(self, rally_index: int) -> bool:
        try:
            return self.find_rally(rally_index) is not None
        except StoreError as e:
            logger.warning(f"Cannot check rally {rally_index} in the store, queueing delete: {e}")
            return True

    def _rally(self, rally_index: int) -> Rally:
        if rally_index not in self._rallies:
            raise ValueError(f"Rally {rally_index} was not committed")
        return self._rallies[rally_index]

    def find_rally(self, rally_index: int) -> Optional[Dict[str, Any]]:
        for record in self.store.get_by_parent_id("rallies", self.set_id):
            if record.get("rally_index") == rally_index:
                return record
        return None

    def find_shot(self, rally_index: int, shot_index: int) -> Optional[Dict[str, Any]]:
        rally = self.find_rally(rally_index)
        if rally is None:
            return None
        for record in self.store.get_by_parent_id("shots", rally["id"]):
            if record.get("shot_index") == shot_index:
                return record
        return None

    def _replay(self, command: Command) -> Optional[str]:
        kind = command.kind

        if kind == "set":
            return self.store.update("sets", self.set_id, command.fields)["id"]

        if kind == "rally":
            existing = self.find_rally(command.rally_index)
            if existing:
                record = self.store.update("rallies", existing["id"], command.fields)
            else:
                record = self.store.create("rallies", dict(command.fields, set_id=self.set_id))
            return record["id"]

        if kind == "delete_rally":
            existing = self.find_rally(command.rally_index)
            if existing:
                self.store.delete("rallies", existing["id"])
            return None

        rally = self.find_rally(command.rally_index)
        if rally is None:
            raise StoreError(f"rally {command.rally_index} is not in the store")

        existing = self.find_shot(command.rally_index, command.shot_index)

        if kind == "shot":
            if existing:
                return self.store.update("shots", existing["id"], command.fields)["id"]
            return self.store.create("shots", dict(command.fields, rally_id=rally["id"]))["id"]

        # update_shot
        if existing is None:
            raise StoreError(f"shot {command.rally_index}/{command.shot_index} is not in the store")
        return self.store.update("shots", existing["id"], command.fields)["id"]
