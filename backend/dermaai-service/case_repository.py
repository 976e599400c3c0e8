"""
DermaAI Analysis Service - Persistence Backends

Provides repository implementations for:
- Cases (ownership-checked create / get / update / delete)
- User settings and push tokens
- Lesion trackings, snapshots and comparisons

Backends:
- SqliteCaseRepository (runtime default)
- InMemoryCaseRepository (tests and ephemeral runs)
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel

from models import (
    CaseRecord,
    LesionComparison,
    LesionSnapshot,
    LesionTracking,
    UserSettings,
    utc_now,
)

ModelT = TypeVar("ModelT", bound=BaseModel)

CASE_IMMUTABLE_FIELDS = {"id", "case_id", "owner_id", "created_at"}
TRACKING_IMMUTABLE_FIELDS = {"id", "owner_id", "created_at"}


def _apply_fields(
    model_cls: Type[ModelT],
    record: ModelT,
    fields: Mapping[str, Any],
    immutable: set,
) -> ModelT:
    unknown = set(fields) - set(model_cls.model_fields)
    if unknown:
        raise ValueError(f"Unknown {model_cls.__name__} field(s): {', '.join(sorted(unknown))}")
    blocked = set(fields) & immutable
    if blocked:
        raise ValueError(f"Field(s) cannot be changed: {', '.join(sorted(blocked))}")
    merged = {name: getattr(record, name) for name in model_cls.model_fields}
    merged.update(fields)
    if "updated_at" in model_cls.model_fields:
        merged["updated_at"] = utc_now()
    return model_cls.model_validate(merged)


def _matches_case_ref(record: CaseRecord, case_ref: str) -> bool:
    return record.id == case_ref or record.case_id == case_ref


class CaseRepository:
    # Cases
    def create_case(self, record: CaseRecord) -> CaseRecord:
        raise NotImplementedError

    def get_case(self, case_ref: str, owner_id: str) -> CaseRecord:
        raise NotImplementedError

    def list_cases(self, owner_id: str, limit: int = 100) -> List[CaseRecord]:
        raise NotImplementedError

    def update_case(self, case_id: str, owner_id: str, fields: Mapping[str, Any]) -> CaseRecord:
        raise NotImplementedError

    def delete_case(self, case_ref: str, owner_id: str) -> bool:
        raise NotImplementedError

    # Settings / push tokens
    def get_user_settings(self, owner_id: str) -> UserSettings:
        raise NotImplementedError

    def update_user_settings(self, owner_id: str, settings: UserSettings) -> UserSettings:
        raise NotImplementedError

    def register_push_token(self, owner_id: str, token: str) -> None:
        raise NotImplementedError

    def list_push_tokens(self, owner_id: str) -> List[str]:
        raise NotImplementedError

    # Lesion tracking
    def create_tracking(self, tracking: LesionTracking) -> LesionTracking:
        raise NotImplementedError

    def get_tracking(self, tracking_id: str, owner_id: str) -> LesionTracking:
        raise NotImplementedError

    def list_trackings(self, owner_id: str) -> List[LesionTracking]:
        raise NotImplementedError

    def update_tracking(self, tracking_id: str, owner_id: str, fields: Mapping[str, Any]) -> LesionTracking:
        raise NotImplementedError

    def delete_tracking(self, tracking_id: str, owner_id: str) -> bool:
        raise NotImplementedError

    def add_snapshot(self, snapshot: LesionSnapshot) -> LesionSnapshot:
        raise NotImplementedError

    def get_snapshot(self, snapshot_id: str) -> LesionSnapshot:
        raise NotImplementedError

    def list_snapshots(self, tracking_id: str) -> List[LesionSnapshot]:
        raise NotImplementedError

    def save_comparison(self, comparison: LesionComparison) -> LesionComparison:
        raise NotImplementedError

    def get_comparison(self, comparison_id: str) -> LesionComparison:
        raise NotImplementedError

    def list_comparisons(self, tracking_id: str) -> List[LesionComparison]:
        raise NotImplementedError


class InMemoryCaseRepository(CaseRepository):
    def __init__(self) -> None:
        self._cases: Dict[str, CaseRecord] = {}
        self._settings: Dict[str, UserSettings] = {}
        self._push_tokens: Dict[str, List[str]] = {}
        self._trackings: Dict[str, LesionTracking] = {}
        self._snapshots: Dict[str, LesionSnapshot] = {}
        self._comparisons: Dict[str, LesionComparison] = {}
        self._lock = Lock()

    def _find_case(self, case_ref: str) -> Optional[CaseRecord]:
        record = self._cases.get(case_ref)
        if record is not None:
            return record
        return next((r for r in self._cases.values() if _matches_case_ref(r, case_ref)), None)

    def create_case(self, record: CaseRecord) -> CaseRecord:
        with self._lock:
            if record.id in self._cases:
                raise ValueError(f"Case already exists: {record.id}")
            self._cases[record.id] = record
        return record

    def get_case(self, case_ref: str, owner_id: str) -> CaseRecord:
        record = self._find_case(case_ref)
        if record is None or record.owner_id != owner_id:
            raise KeyError(f"Case not found: {case_ref}")
        return record

    def list_cases(self, owner_id: str, limit: int = 100) -> List[CaseRecord]:
        rows = [r for r in self._cases.values() if r.owner_id == owner_id]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[: max(1, limit)]

    def update_case(self, case_id: str, owner_id: str, fields: Mapping[str, Any]) -> CaseRecord:
        with self._lock:
            record = self._find_case(case_id)
            if record is None:
                raise KeyError(f"Case not found: {case_id}")
            if record.owner_id != owner_id:
                raise PermissionError(f"Unauthorized update of case {case_id}")
            updated = _apply_fields(CaseRecord, record, fields, CASE_IMMUTABLE_FIELDS)
            self._cases[record.id] = updated
        return updated

    def delete_case(self, case_ref: str, owner_id: str) -> bool:
        with self._lock:
            record = self._find_case(case_ref)
            if record is None or record.owner_id != owner_id:
                return False
            del self._cases[record.id]
        return True

    def get_user_settings(self, owner_id: str) -> UserSettings:
        return self._settings.get(owner_id) or UserSettings()

    def update_user_settings(self, owner_id: str, settings: UserSettings) -> UserSettings:
        self._settings[owner_id] = settings
        return settings

    def register_push_token(self, owner_id: str, token: str) -> None:
        with self._lock:
            tokens = self._push_tokens.setdefault(owner_id, [])
            if token not in tokens:
                tokens.append(token)

    def list_push_tokens(self, owner_id: str) -> List[str]:
        return list(self._push_tokens.get(owner_id, []))

    def create_tracking(self, tracking: LesionTracking) -> LesionTracking:
        self._trackings[tracking.id] = tracking
        return tracking

    def get_tracking(self, tracking_id: str, owner_id: str) -> LesionTracking:
        tracking = self._trackings.get(tracking_id)
        if tracking is None or tracking.owner_id != owner_id:
            raise KeyError(f"Lesion tracking not found: {tracking_id}")
        return tracking

    def list_trackings(self, owner_id: str) -> List[LesionTracking]:
        rows = [t for t in self._trackings.values() if t.owner_id == owner_id]
        rows.sort(key=lambda t: t.updated_at, reverse=True)
        return rows

    def update_tracking(self, tracking_id: str, owner_id: str, fields: Mapping[str, Any]) -> LesionTracking:
        with self._lock:
            tracking = self.get_tracking(tracking_id, owner_id)
            updated = _apply_fields(LesionTracking, tracking, fields, TRACKING_IMMUTABLE_FIELDS)
            self._trackings[tracking_id] = updated
        return updated

    def delete_tracking(self, tracking_id: str, owner_id: str) -> bool:
        with self._lock:
            tracking = self._trackings.get(tracking_id)
            if tracking is None or tracking.owner_id != owner_id:
                return False
            del self._trackings[tracking_id]
            for key in [k for k, s in self._snapshots.items() if s.tracking_id == tracking_id]:
                del self._snapshots[key]
            for key in [k for k, c in self._comparisons.items() if c.tracking_id == tracking_id]:
                del self._comparisons[key]
        return True

    def add_snapshot(self, snapshot: LesionSnapshot) -> LesionSnapshot:
        self._snapshots[snapshot.id] = snapshot
        return snapshot

    def get_snapshot(self, snapshot_id: str) -> LesionSnapshot:
        snapshot = self._snapshots.get(snapshot_id)
        if snapshot is None:
            raise KeyError(f"Lesion snapshot not found: {snapshot_id}")
        return snapshot

    def list_snapshots(self, tracking_id: str) -> List[LesionSnapshot]:
        rows = [s for s in self._snapshots.values() if s.tracking_id == tracking_id]
        rows.sort(key=lambda s: s.captured_at)
        return rows

    def save_comparison(self, comparison: LesionComparison) -> LesionComparison:
        self._comparisons[comparison.id] = comparison
        return comparison

    def get_comparison(self, comparison_id: str) -> LesionComparison:
        comparison = self._comparisons.get(comparison_id)
        if comparison is None:
            raise KeyError(f"Lesion comparison not found: {comparison_id}")
        return comparison

    def list_comparisons(self, tracking_id: str) -> List[LesionComparison]:
        rows = [c for c in self._comparisons.values() if c.tracking_id == tracking_id]
        rows.sort(key=lambda c: c.created_at, reverse=True)
        return rows


class SqliteCaseRepository(CaseRepository):
    def __init__(self, db_path: str) -> None:
        if not db_path:
            raise RuntimeError("SQLite repository requires a non-empty db_path.")
        self.db_path = str(Path(db_path).expanduser().resolve())
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS derma_cases (
                    id TEXT PRIMARY KEY,
                    case_id TEXT NOT NULL UNIQUE,
                    owner_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_derma_cases_owner_created
                ON derma_cases(owner_id, created_at DESC)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_settings (
                    owner_id TEXT PRIMARY KEY,
                    payload_json TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS push_tokens (
                    owner_id TEXT NOT NULL,
                    token TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (owner_id, token)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS lesion_trackings (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS lesion_snapshots (
                    id TEXT PRIMARY KEY,
                    tracking_id TEXT NOT NULL,
                    captured_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS lesion_comparisons (
                    id TEXT PRIMARY KEY,
                    tracking_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                )
                """
            )
            conn.commit()

    # -------------------------------------------------------------------------
    # Cases
    # -------------------------------------------------------------------------

    @staticmethod
    def _select_case(conn: sqlite3.Connection, case_ref: str) -> Optional[CaseRecord]:
        row = conn.execute(
            "SELECT payload_json FROM derma_cases WHERE id = ? OR case_id = ?",
            (case_ref, case_ref),
        ).fetchone()
        if row is None:
            return None
        return CaseRecord.model_validate_json(row["payload_json"])

    def create_case(self, record: CaseRecord) -> CaseRecord:
        with self._lock, self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO derma_cases(id, case_id, owner_id, created_at, payload_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.case_id,
                        record.owner_id,
                        record.created_at.isoformat(),
                        record.model_dump_json(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Case already exists: {record.id}") from exc
            conn.commit()
        return record

    def get_case(self, case_ref: str, owner_id: str) -> CaseRecord:
        with self._lock, self._connect() as conn:
            record = self._select_case(conn, case_ref)
        if record is None or record.owner_id != owner_id:
            raise KeyError(f"Case not found: {case_ref}")
        return record

    def list_cases(self, owner_id: str, limit: int = 100) -> List[CaseRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT payload_json FROM derma_cases
                WHERE owner_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (owner_id, max(1, int(limit))),
            ).fetchall()
        return [CaseRecord.model_validate_json(row["payload_json"]) for row in rows]

    def update_case(self, case_id: str, owner_id: str, fields: Mapping[str, Any]) -> CaseRecord:
        with self._lock, self._connect() as conn:
            record = self._select_case(conn, case_id)
            if record is None:
                raise KeyError(f"Case not found: {case_id}")
            if record.owner_id != owner_id:
                raise PermissionError(f"Unauthorized update of case {case_id}")
            updated = _apply_fields(CaseRecord, record, fields, CASE_IMMUTABLE_FIELDS)
            conn.execute(
                "UPDATE derma_cases SET payload_json = ? WHERE id = ?",
                (updated.model_dump_json(), updated.id),
            )
            conn.commit()
        return updated

    def delete_case(self, case_ref: str, owner_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM derma_cases WHERE (id = ? OR case_id = ?) AND owner_id = ?",
                (case_ref, case_ref, owner_id),
            )
            conn.commit()
            return bool(cursor.rowcount and cursor.rowcount > 0)

    # -------------------------------------------------------------------------
    # Settings / push tokens
    # -------------------------------------------------------------------------

    def get_user_settings(self, owner_id: str) -> UserSettings:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM user_settings WHERE owner_id = ?",
                (owner_id,),
            ).fetchone()
        if row is None:
            return UserSettings()
        return UserSettings.model_validate_json(row["payload_json"])

    def update_user_settings(self, owner_id: str, settings: UserSettings) -> UserSettings:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_settings(owner_id, payload_json)
                VALUES (?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET payload_json = excluded.payload_json
                """,
                (owner_id, settings.model_dump_json()),
            )
            conn.commit()
        return settings

    def register_push_token(self, owner_id: str, token: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO push_tokens(owner_id, token, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(owner_id, token) DO NOTHING
                """,
                (owner_id, token, utc_now().isoformat()),
            )
            conn.commit()

    def list_push_tokens(self, owner_id: str) -> List[str]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT token FROM push_tokens WHERE owner_id = ? ORDER BY created_at",
                (owner_id,),
            ).fetchall()
        return [str(row["token"]) for row in rows]

    # -------------------------------------------------------------------------
    # Lesion tracking
    # -------------------------------------------------------------------------

    def _upsert_tracking(self, conn: sqlite3.Connection, tracking: LesionTracking) -> None:
        conn.execute(
            """
            INSERT INTO lesion_trackings(id, owner_id, updated_at, payload_json)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                updated_at = excluded.updated_at,
                payload_json = excluded.payload_json
            """,
            (tracking.id, tracking.owner_id, tracking.updated_at.isoformat(), tracking.model_dump_json()),
        )

    @staticmethod
    def _select_tracking(conn: sqlite3.Connection, tracking_id: str, owner_id: str) -> LesionTracking:
        row = conn.execute(
            "SELECT payload_json FROM lesion_trackings WHERE id = ? AND owner_id = ?",
            (tracking_id, owner_id),
        ).fetchone()
        if row is None:
            raise KeyError(f"Lesion tracking not found: {tracking_id}")
        return LesionTracking.model_validate_json(row["payload_json"])

    def create_tracking(self, tracking: LesionTracking) -> LesionTracking:
        with self._lock, self._connect() as conn:
            self._upsert_tracking(conn, tracking)
            conn.commit()
        return tracking

    def get_tracking(self, tracking_id: str, owner_id: str) -> LesionTracking:
        with self._lock, self._connect() as conn:
            return self._select_tracking(conn, tracking_id, owner_id)

    def list_trackings(self, owner_id: str) -> List[LesionTracking]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT payload_json FROM lesion_trackings
                WHERE owner_id = ?
                ORDER BY updated_at DESC
                """,
                (owner_id,),
            ).fetchall()
        return [LesionTracking.model_validate_json(row["payload_json"]) for row in rows]

    def update_tracking(self, tracking_id: str, owner_id: str, fields: Mapping[str, Any]) -> LesionTracking:
        with self._lock, self._connect() as conn:
            tracking = self._select_tracking(conn, tracking_id, owner_id)
            updated = _apply_fields(LesionTracking, tracking, fields, TRACKING_IMMUTABLE_FIELDS)
            self._upsert_tracking(conn, updated)
            conn.commit()
        return updated

    def delete_tracking(self, tracking_id: str, owner_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM lesion_trackings WHERE id = ? AND owner_id = ?",
                (tracking_id, owner_id),
            )
            deleted = bool(cursor.rowcount and cursor.rowcount > 0)
            if deleted:
                conn.execute("DELETE FROM lesion_snapshots WHERE tracking_id = ?", (tracking_id,))
                conn.execute("DELETE FROM lesion_comparisons WHERE tracking_id = ?", (tracking_id,))
            conn.commit()
            return deleted

    def add_snapshot(self, snapshot: LesionSnapshot) -> LesionSnapshot:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO lesion_snapshots(id, tracking_id, captured_at, payload_json)
                VALUES (?, ?, ?, ?)
                """,
                (snapshot.id, snapshot.tracking_id, snapshot.captured_at.isoformat(), snapshot.model_dump_json()),
            )
            conn.commit()
        return snapshot

    def get_snapshot(self, snapshot_id: str) -> LesionSnapshot:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM lesion_snapshots WHERE id = ?",
                (snapshot_id,),
            ).fetchone()
        if row is None:
            raise KeyError(f"Lesion snapshot not found: {snapshot_id}")
        return LesionSnapshot.model_validate_json(row["payload_json"])

    def list_snapshots(self, tracking_id: str) -> List[LesionSnapshot]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT payload_json FROM lesion_snapshots
                WHERE tracking_id = ?
                ORDER BY captured_at ASC
                """,
                (tracking_id,),
            ).fetchall()
        return [LesionSnapshot.model_validate_json(row["payload_json"]) for row in rows]

    def save_comparison(self, comparison: LesionComparison) -> LesionComparison:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO lesion_comparisons(id, tracking_id, created_at, payload_json)
                VALUES (?, ?, ?, ?)
                """,
                (
                    comparison.id,
                    comparison.tracking_id,
                    comparison.created_at.isoformat(),
                    comparison.model_dump_json(),
                ),
            )
            conn.commit()
        return comparison

    def get_comparison(self, comparison_id: str) -> LesionComparison:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM lesion_comparisons WHERE id = ?",
                (comparison_id,),
            ).fetchone()
        if row is None:
            raise KeyError(f"Lesion comparison not found: {comparison_id}")
        return LesionComparison.model_validate_json(row["payload_json"])

    def list_comparisons(self, tracking_id: str) -> List[LesionComparison]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT payload_json FROM lesion_comparisons
                WHERE tracking_id = ?
                ORDER BY created_at DESC
                """,
                (tracking_id,),
            ).fetchall()
        return [LesionComparison.model_validate_json(row["payload_json"]) for row in rows]
