import json
import logging
import uuid
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Optional

from tagger.config import SCHEMA_VERSION
from tagger.exceptions import RecordNotFoundError, StoreError
from tagger.models import PHASE2_SHOT_COLUMNS

logger = logging.getLogger(__name__)

# collection -> parent key
COLLECTIONS: Dict[str, Optional[str]] = {
    "matches": None,
    "sets": "match_id",
    "rallies": "set_id",
    "shots": "rally_id",
}

_CHILDREN = {
    "matches": "sets",
    "sets": "rallies",
    "rallies": "shots",
}

DELETE_SCOPES = ("all", "phase2_only")


class MemoryStore:
    """
    Durable record store kept in process memory.

    Every read returns a copy so callers can never mutate stored records
    behind the store's back.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {c: {} for c in COLLECTIONS}

    # ---------------------------------------------------------
    # Core API
    # ---------------------------------------------------------

    def create(self, collection: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        table = self._table(collection)
        parent_key = COLLECTIONS[collection]

        if parent_key and not fields.get(parent_key):
            raise StoreError(f"{collection} record requires {parent_key}")

        record = deepcopy(fields)
        record["id"] = uuid.uuid4().hex
        table[record["id"]] = record
        self._commit()

        return deepcopy(record)

    def update(self, collection: str, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        table = self._table(collection)

        if record_id not in table:
            raise RecordNotFoundError(f"{collection}/{record_id} not found")

        changes = {k: deepcopy(v) for k, v in fields.items() if k != "id"}
        table[record_id].update(changes)
        self._commit()

        return deepcopy(table[record_id])

    def get_by_id(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        record = self._table(collection).get(record_id)
        return deepcopy(record) if record is not None else None

    def get_by_parent_id(self, collection: str, parent_id: str) -> List[Dict[str, Any]]:
        table = self._table(collection)
        parent_key = COLLECTIONS[collection]
        if parent_key is None:
            raise StoreError(f"{collection} has no parent")

        return [deepcopy(r) for r in table.values() if r.get(parent_key) == parent_id]

    def delete(self, collection: str, record_id: str):
        self._delete_cascade(collection, record_id)
        self._commit()

    def delete_tagging_data(self, set_id: str, scope: str = "all"):
        """
        Redo support.

        all:         drop every rally and shot of the set, reset progress
        phase2_only: keep Phase 1 structure, clear shot annotation columns
        """
        if scope not in DELETE_SCOPES:
            raise ValueError(f"Invalid scope: {scope}")

        if set_id not in self._table("sets"):
            raise RecordNotFoundError(f"sets/{set_id} not found")

        rallies = [r for r in self._data["rallies"].values() if r.get("set_id") == set_id]
        set_record = self._data["sets"][set_id]

        if scope == "all":
            for rally in rallies:
                self._delete_cascade("rallies", rally["id"])

            set_record.update({
                "tagging_phase": "not_started",
                "phase1_last_rally": 0,
                "phase1_total_rallies": None,
                "phase2_last_shot_index": 0,
                "phase2_total_shots": None,
                "is_tagged": False,
                "tagging_started_at": None,
                "tagging_completed_at": None,
                "score_final_a": None,
                "score_final_b": None,
                "winner": None,
            })
        else:
            rally_ids = {r["id"] for r in rallies}
            for shot in self._data["shots"].values():
                if shot.get("rally_id") in rally_ids:
                    for column in PHASE2_SHOT_COLUMNS:
                        shot[column] = None
                    shot["is_tagged"] = False

            set_record.update({
                "tagging_phase": "phase1_complete",
                "phase2_last_shot_index": 0,
                "phase2_total_shots": None,
                "is_tagged": False,
                "tagging_completed_at": None,
            })

        logger.info(f"Deleted tagging data for set {set_id} (scope={scope})")
        self._commit()

    # ---------------------------------------------------------
    # Internals
    # ---------------------------------------------------------

    def _table(self, collection: str) -> Dict[str, Dict[str, Any]]:
        if collection not in self._data:
            raise StoreError(f"Unknown collection: {collection}")
        return self._data[collection]

    def _delete_cascade(self, collection: str, record_id: str):
        table = self._table(collection)
        if record_id not in table:
            raise RecordNotFoundError(f"{collection}/{record_id} not found")

        child = _CHILDREN.get(collection)
        if child:
            parent_key = COLLECTIONS[child]
            child_ids = [r["id"] for r in self._data[child].values() if r.get(parent_key) == record_id]
            for child_id in child_ids:
                self._delete_cascade(child, child_id)

        del table[record_id]

    def _commit(self):
        pass

    def dump(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"schema_version": SCHEMA_VERSION}
        data.update(deepcopy(self._data))
        return data


class JsonFileStore(MemoryStore):
    """
    MemoryStore mirrored to a single JSON document, rewritten on every write.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)

        if self.path.exists():
            self._load()

    def _load(self):
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)

        if data.get("schema_version") != SCHEMA_VERSION:
            raise StoreError(f"Unsupported schema_version: {data.get('schema_version')}")

        for collection in COLLECTIONS:
            self._data[collection] = dict(data.get(collection, {}) or {})

    def _commit(self):
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self.dump(), f, ensure_ascii=False, indent=2)
            tmp_path.replace(self.path)
        except OSError as e:
            raise StoreError(f"Cannot write store file {self.path}: {e}") from e
