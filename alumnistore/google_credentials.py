"""Helpers for validating and normalising Google service account credentials."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Iterable, Mapping

from google.oauth2 import service_account

from alumnistore.errors import StoreError

__all__ = [
    "CredentialsFileInvalidError",
    "REQUIRED_FIELDS",
    "SCOPES",
    "credentials_from_payload",
    "load_service_account_data",
    "parse_service_account_json",
]


class CredentialsFileInvalidError(StoreError):
    """Raised when service account JSON is missing required data."""


SCOPES: Iterable[str] = (
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive.readonly",
)

REQUIRED_FIELDS: Iterable[str] = (
    "type",
    "project_id",
    "private_key_id",
    "private_key",
    "client_email",
    "client_id",
    "token_uri",
)


def _normalise_private_key(key: str) -> str:
    key = key.replace("\r\n", "\n").replace("\r", "\n")
    key = key.replace("\\n", "\n")
    if not key.endswith("\n"):
        key += "\n"
    return key


def _parse_text(raw: str) -> Mapping[str, object]:
    payload_text = raw.lstrip("\ufeff").strip()
    if not payload_text:
        raise CredentialsFileInvalidError("Service account JSON is empty.")
    try:
        return json.loads(payload_text)
    except json.JSONDecodeError:
        pass
    # Env vars frequently carry the key with literal "\n" sequences.
    try:
        return json.loads(payload_text.replace("\\n", "\n"), strict=False)
    except json.JSONDecodeError as exc:
        raise CredentialsFileInvalidError(f"JSON parse error: {exc.msg}") from exc


def _validate_payload(payload: Mapping[str, object]) -> Dict[str, object]:
    data: Dict[str, object] = dict(payload)
    missing: list[str] = []

    for field in REQUIRED_FIELDS:
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            missing.append(field)

    if data.get("type") != "service_account":
        missing.append("type")

    if missing:
        ordered = ", ".join(sorted(dict.fromkeys(missing)))
        raise CredentialsFileInvalidError(f"JSON missing fields: {ordered}")

    data["private_key"] = _normalise_private_key(str(data["private_key"]))
    return data


def parse_service_account_json(raw: str) -> Dict[str, object]:
    """Validate inline service account JSON (e.g. from ``GCP_SA_JSON``)."""

    return _validate_payload(_parse_text(raw))


def load_service_account_data(path: Path) -> Dict[str, object]:
    """Return validated service account data read from ``path``."""

    try:
        raw = path.read_text(encoding="utf-8-sig")
    except OSError as exc:
        raise CredentialsFileInvalidError(f"Could not read JSON file: {exc}") from exc
    return parse_service_account_json(raw)


def credentials_from_payload(payload: Mapping[str, object], scopes: Iterable[str] = SCOPES):
    """Build ``google.oauth2`` credentials for the Sheets/Drive scopes."""

    try:
        return service_account.Credentials.from_service_account_info(dict(payload), scopes=list(scopes))
    except ValueError as exc:
        raise CredentialsFileInvalidError(str(exc) or "JSON missing fields: private_key") from exc
