"""Identity store implementations: in-memory and parquet-backed."""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import numpy as np
import pandas as pd

from facetrack.io_utils import ensure_dir
from facetrack.types import KnownIdentity

LOGGER = logging.getLogger("facetrack.recognition.store")

COLUMNS = ["id", "name", "note", "user_scope", "embedding", "created_at", "updated_at"]
UPDATABLE_FIELDS = {"name", "note", "embedding", "user_scope"}


class IdentityStore(Protocol):
    def load_known_identities(self, user_scope: Optional[str] = None) -> List[KnownIdentity]:
        ...

    def save_new_identity(self, name: str, note: str, descriptor: np.ndarray, user_scope: str = "default") -> str:
        ...

    def update_identity(self, identity_id: str, **updates: Any) -> None:
        ...

    def delete_identity(self, identity_id: str) -> None:
        ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


def _check_updates(updates: Dict[str, Any]) -> None:
    unknown = set(updates) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update identity fields: {sorted(unknown)}")


class InMemoryIdentityStore:
    """Dictionary-backed store, handy for tests and demos."""

    def __init__(self, identities: Optional[List[KnownIdentity]] = None) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, KnownIdentity] = {}
        for identity in identities or []:
            self._records[identity.id] = identity

    def load_known_identities(self, user_scope: Optional[str] = None) -> List[KnownIdentity]:
        with self._lock:
            records = list(self._records.values())
        if user_scope is None:
            return records
        return [identity for identity in records if identity.user_scope == user_scope]

    def save_new_identity(self, name: str, note: str, descriptor: np.ndarray, user_scope: str = "default") -> str:
        identity = KnownIdentity(
            id=_new_id(),
            display_name=name,
            note=note or "",
            embedding=_normalize_embedding(descriptor),
            user_scope=user_scope,
        )
        with self._lock:
            self._records[identity.id] = identity
        LOGGER.info("Saved identity %s (%s) scope=%s", name, identity.id, user_scope)
        return identity.id

    def update_identity(self, identity_id: str, **updates: Any) -> None:
        _check_updates(updates)
        with self._lock:
            identity = self._records.get(identity_id)
            if identity is None:
                raise KeyError(identity_id)
            if "name" in updates:
                identity.display_name = updates["name"]
            if "note" in updates:
                identity.note = updates["note"] or ""
            if "embedding" in updates:
                identity.embedding = _normalize_embedding(updates["embedding"])
            if "user_scope" in updates:
                identity.user_scope = updates["user_scope"]

    def delete_identity(self, identity_id: str) -> None:
        with self._lock:
            if self._records.pop(identity_id, None) is None:
                raise KeyError(identity_id)
        LOGGER.info("Deleted identity %s", identity_id)


class ParquetIdentityStore:
    """Keeps registered identities in a single parquet file."""

    def __init__(self, parquet_path: Path) -> None:
        self.parquet_path = Path(parquet_path)
        self._lock = threading.Lock()

    def _read(self) -> pd.DataFrame:
        if not self.parquet_path.exists():
            return pd.DataFrame(columns=COLUMNS)
        return pd.read_parquet(self.parquet_path)

    def _write(self, df: pd.DataFrame) -> None:
        ensure_dir(self.parquet_path.parent)
        df = df.copy()
        df["embedding"] = [_normalize_embedding(value).tolist() for value in df["embedding"]]
        df.to_parquet(self.parquet_path, index=False)

    def load_known_identities(self, user_scope: Optional[str] = None) -> List[KnownIdentity]:
        with self._lock:
            df = self._read()
        if user_scope is not None and not df.empty:
            df = df[df["user_scope"] == user_scope]
        identities: List[KnownIdentity] = []
        for _, row in df.iterrows():
            identities.append(
                KnownIdentity(
                    id=str(row["id"]),
                    display_name=str(row["name"]),
                    note=str(row["note"] or ""),
                    embedding=_normalize_embedding(row["embedding"]),
                    user_scope=str(row["user_scope"]),
                )
            )
        LOGGER.info("Loaded %d identities from %s (scope=%s)", len(identities), self.parquet_path, user_scope)
        return identities

    def save_new_identity(self, name: str, note: str, descriptor: np.ndarray, user_scope: str = "default") -> str:
        identity_id = _new_id()
        timestamp = _now_iso()
        row = {
            "id": identity_id,
            "name": name,
            "note": note or "",
            "user_scope": user_scope,
            "embedding": _normalize_embedding(descriptor).tolist(),
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        with self._lock:
            records = self._read().to_dict("records")
            records.append(row)
            self._write(pd.DataFrame(records, columns=COLUMNS))
        LOGGER.info("Saved identity %s (%s) scope=%s", name, identity_id, user_scope)
        return identity_id

    def update_identity(self, identity_id: str, **updates: Any) -> None:
        _check_updates(updates)
        with self._lock:
            records = self._read().to_dict("records")
            record = next((rec for rec in records if rec["id"] == identity_id), None)
            if record is None:
                raise KeyError(identity_id)
            for field_name, value in updates.items():
                if field_name == "embedding":
                    value = _normalize_embedding(value).tolist()
                elif field_name == "note":
                    value = value or ""
                record[field_name] = value
            record["updated_at"] = _now_iso()
            self._write(pd.DataFrame(records, columns=COLUMNS))
        LOGGER.info("Updated identity %s fields=%s", identity_id, sorted(updates))

    def delete_identity(self, identity_id: str) -> None:
        with self._lock:
            df = self._read()
            mask = df["id"] == identity_id
            if not mask.any():
                raise KeyError(identity_id)
            self._write(df[~mask].reset_index(drop=True))
        LOGGER.info("Deleted identity %s", identity_id)


def _normalize_embedding(raw) -> np.ndarray:
    """Convert a stored or freshly extracted embedding into a 1D float32 vector."""
    if isinstance(raw, np.ndarray):
        if raw.dtype == object or raw.ndim > 1:
            parts = [np.asarray(part, dtype=np.float32).ravel() for part in raw]
            arr = np.concatenate(parts) if parts else np.empty((0,), dtype=np.float32)
        else:
            arr = raw.astype(np.float32)
    elif isinstance(raw, list):
        if raw and isinstance(raw[0], (list, tuple, np.ndarray)):
            parts = [np.asarray(part, dtype=np.float32).ravel() for part in raw]
            arr = np.concatenate(parts) if parts else np.empty((0,), dtype=np.float32)
        else:
            arr = np.asarray(raw, dtype=np.float32)
    else:
        arr = np.asarray(raw, dtype=np.float32)
    return arr.reshape(-1).astype(np.float32)
