"""
File-backed record store for certificates, ACME accounts and HTTP-01
challenge tokens.  Point CERT_STORE_PATH at a volume shared by all nodes.

Directory layout:
  <root>/<servername>/
      record.json     — CertificateRecord without the private key
      privkey.pem     — Private key (mode 0o600)
      fullchain.pem   — cert + chain, rewritten on every renewal
  <root>/.accounts/<account key id>.json   (mode 0o600)
  <root>/.challenges/<token>.json

All writes are atomic: temp file + fsync + atomic rename.
"""
from __future__ import annotations

import json
import logging
import re
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from ca.crypto import generate_key_pem
from renewal.models import AcmeAccountRecord, CertificateRecord
from storage.atomic import atomic_write_text

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_SECRET_MODE = 0o600
_PUBLIC_MODE = 0o644


def _safe_name(name: str) -> str:
    """Make *name* usable as a single path component (no traversal)."""
    safe = _UNSAFE_CHARS.sub("_", name).lstrip(".")
    if not safe:
        raise ValueError(f"unusable store key: {name!r}")
    return safe


class FileCertStore:
    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self._lock = threading.RLock()

    # ── Certificate records ───────────────────────────────────────────────

    def create_record(self, servername: str) -> CertificateRecord:
        """Create a pending record for *servername* (idempotent)."""
        with self._lock:
            existing = self.get_record({"servername": servername}, include_secrets=True)
            if existing is not None:
                return existing
            if (self.root / _safe_name(servername) / "record.json").exists():
                raise ValueError(f"store key for {servername!r} is already used by another record")
            record = CertificateRecord(id=uuid.uuid4().hex, servername=servername)
            self._write_record(record)
            logger.info("Created pending certificate record %s for %s", record.id, servername)
            return record

    def get_record(self, query: Dict[str, Any], include_secrets: bool = False) -> Optional[CertificateRecord]:
        record_dir = self._find(query)
        if record_dir is None:
            return None
        data = json.loads((record_dir / "record.json").read_text())
        if include_secrets:
            key_path = record_dir / "privkey.pem"
            if key_path.exists():
                data["private_key"] = key_path.read_text()
        return CertificateRecord.from_dict(data)

    def update(self, query: Dict[str, Any], fields: Dict[str, Any]) -> bool:
        """Apply *fields* to the matching record; False when nothing matched."""
        with self._lock:
            record = self.get_record(query, include_secrets=True)
            if record is None:
                return False
            for name, value in fields.items():
                if name not in CertificateRecord.__dataclass_fields__ or name == "id":
                    raise ValueError(f"unknown certificate record field: {name}")
                setattr(record, name, value)
            self._write_record(record)
            return True

    def generate_key(self, bits: int, exponent: int) -> str:
        return generate_key_pem(bits, exponent)

    def reset_private_key(self, query: Dict[str, Any], options) -> str:
        """Generate a fresh private key for the matching record and persist it."""
        with self._lock:
            record = self.get_record(query, include_secrets=True)
            if record is None:
                raise LookupError(f"no certificate record matches {query}")
            record.private_key = self.generate_key(options.key_bits, options.key_exponent)
            self._write_record(record)
            return record.private_key

    # ── ACME accounts ─────────────────────────────────────────────────────

    def get_account(self, key: str) -> Optional[AcmeAccountRecord]:
        path = self.root / ".accounts" / f"{_safe_name(key)}.json"
        if not path.exists():
            return None
        return AcmeAccountRecord.from_dict(json.loads(path.read_text()))

    def put_account(self, key: str, record: AcmeAccountRecord) -> None:
        path = self.root / ".accounts" / f"{_safe_name(key)}.json"
        data = {**record.to_dict(), "created": datetime.now(tz=timezone.utc).isoformat()}
        atomic_write_text(path, json.dumps(data, indent=2), mode=_SECRET_MODE)

    # ── HTTP-01 challenges ────────────────────────────────────────────────

    def put_challenge(self, token: str, domain: str, key_authorization: str) -> None:
        path = self.root / ".challenges" / f"{_safe_name(token)}.json"
        data = {"domain": domain, "key_authorization": key_authorization}
        atomic_write_text(path, json.dumps(data), mode=_PUBLIC_MODE)

    def get_challenge(self, token: str) -> Optional[dict]:
        path = self.root / ".challenges" / f"{_safe_name(token)}.json"
        if not path.exists():
            return None
        return json.loads(path.read_text())

    def remove_challenge(self, token: str) -> None:
        path = self.root / ".challenges" / f"{_safe_name(token)}.json"
        path.unlink(missing_ok=True)

    # ── Internal ──────────────────────────────────────────────────────────

    def _find(self, query: Dict[str, Any]) -> Optional[Path]:
        if "servername" in query:
            try:
                record_dir = self.root / _safe_name(query["servername"])
            except ValueError:
                return None
            if not (record_dir / "record.json").exists():
                return None
            # Distinct names can share a sanitized directory; the stored name decides.
            data = self._read_json(record_dir)
            if data.get("servername") != query["servername"]:
                return None
            if "id" in query and data.get("id") != query["id"]:
                return None
            return record_dir

        if "id" in query:
            if not self.root.exists():
                return None
            for record_json in self.root.glob("*/record.json"):
                if self._read_json(record_json.parent).get("id") == query["id"]:
                    return record_json.parent
            return None

        raise ValueError(f"unsupported record query: {query}")

    @staticmethod
    def _read_json(record_dir: Path) -> dict:
        return json.loads((record_dir / "record.json").read_text())

    def _write_record(self, record: CertificateRecord) -> None:
        record_dir = self.root / _safe_name(record.servername)
        data = record.to_dict()
        private_key = data.pop("private_key")

        if private_key:
            atomic_write_text(record_dir / "privkey.pem", private_key, mode=_SECRET_MODE)
        if record.cert:
            atomic_write_text(record_dir / "fullchain.pem", record.cert + "".join(record.ca), mode=_PUBLIC_MODE)
        atomic_write_text(record_dir / "record.json", json.dumps(data, indent=2), mode=_PUBLIC_MODE)
