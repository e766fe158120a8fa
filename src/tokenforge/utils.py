from __future__ import annotations

import uuid
from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def new_job_id() -> str:
    return uuid.uuid4().hex


def strip_hex_prefix(value: str) -> str:
    text = value.strip()
    if text[:2].lower() == "0x":
        return text[2:]
    return text


def strip_bytecode_prefix(deploy_data: str | None, bytecode: str) -> str:
    """Return the constructor-argument tail of a deployment payload.

    The deployment transaction data is the creation bytecode followed by the
    ABI-encoded constructor arguments. Returns an empty string when there is no
    payload or it does not start with the given bytecode.
    """
    if not deploy_data:
        return ""
    data = strip_hex_prefix(deploy_data).lower()
    code = strip_hex_prefix(bytecode).lower()
    if not code or not data.startswith(code):
        return ""
    return data[len(code) :]

