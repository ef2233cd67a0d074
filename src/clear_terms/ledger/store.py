from __future__ import annotations

import json
import os
import time
import uuid
from pathlib import Path
from typing import Any

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from clear_terms.core.config import settings
from clear_terms.core.logging import get_logger, log_event, log_exception, monotonic_ms
from clear_terms.ledger.schemas import AccountRecord

logger = get_logger(__name__)


class StoreUnavailable(RuntimeError):
    pass


def _decode_document(raw: bytes | str | dict[str, Any] | None) -> dict[str, AccountRecord]:
    if raw is None:
        return {}
    if isinstance(raw, (bytes, str)):
        if not raw.strip():
            return {}
        data = json.loads(raw)
    else:
        data = raw
    if not isinstance(data, dict):
        raise ValueError("Ledger document must be a JSON object")
    users = data.get("users") or {}
    if not isinstance(users, dict):
        raise ValueError("Ledger document 'users' must be an object")
    return {owner: AccountRecord.model_validate(rec) for owner, rec in users.items()}


def _encode_document(records: dict[str, AccountRecord]) -> dict[str, Any]:
    return {"users": {owner: rec.model_dump(mode="json") for owner, rec in records.items()}}


class LedgerStore:
    backend = "abstract"

    def read_all(self) -> dict[str, AccountRecord]:  # pragma: no cover
        raise NotImplementedError

    def write_all(self, records: dict[str, AccountRecord]) -> None:  # pragma: no cover
        raise NotImplementedError


class LocalLedgerStore(LedgerStore):
    backend = "local"

    def __init__(self, path: Path):
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def read_all(self) -> dict[str, AccountRecord]:
        start = time.monotonic()
        if not self._path.exists():
            return {}
        try:
            return _decode_document(self._path.read_bytes())
        except (OSError, ValueError, ValidationError) as e:
            log_exception(
                logger,
                "ledger.store.read.failure",
                backend="local",
                ledger_path=str(self._path),
                duration_ms=monotonic_ms(start),
            )
            raise StoreUnavailable(f"Unable to read ledger at {self._path}") from e

    def write_all(self, records: dict[str, AccountRecord]) -> None:
        start = time.monotonic()
        body = json.dumps(_encode_document(records), indent=2)
        tmp = self._path.with_name(f".{self._path.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp.write_text(body, encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError as e:
            log_exception(
                logger,
                "ledger.store.write.failure",
                backend="local",
                ledger_path=str(self._path),
                byte_size=len(body),
            )
            tmp.unlink(missing_ok=True)
            raise StoreUnavailable(f"Unable to write ledger at {self._path}") from e
        log_event(
            logger,
            "ledger.store.write.success",
            backend="local",
            records=len(records),
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )


class S3LedgerStore(LedgerStore):
    backend = "s3"

    def __init__(self, *, client=None, bucket: str | None = None, key: str | None = None) -> None:
        self._bucket = bucket or settings.s3_bucket
        self._key = key or settings.s3_ledger_key
        if client is None:
            client = _make_s3_client()
            self._client = client
            self._ensure_bucket()
        else:
            self._client = client

    def _retry_delay_s(self, attempt: int) -> float:
        # attempt=1 => 0.25s, attempt=2 => 0.5s, attempt=3 => 1.0s, ...
        return min(3.0, 0.25 * (2 ** (attempt - 1)))

    def _should_retry_error(self, error: Exception) -> bool:
        if isinstance(error, ClientError):
            code = (error.response.get("Error") or {}).get("Code")
            return code in {
                "RequestCanceled",
                "RequestTimeout",
                "Throttling",
                "ThrottlingException",
                "SlowDown",
                "InternalError",
                "ServiceUnavailable",
            }
        return isinstance(error, BotoCoreError)

    def _ensure_bucket(self) -> None:
        try:
            self._client.head_bucket(Bucket=self._bucket)
        except Exception:  # noqa: BLE001
            self._client.create_bucket(Bucket=self._bucket)

    def read_all(self) -> dict[str, AccountRecord]:
        start = time.monotonic()
        try:
            resp = self._client.get_object(Bucket=self._bucket, Key=self._key)
            body = resp["Body"].read()
        except ClientError as e:
            code = (e.response.get("Error") or {}).get("Code")
            if code in {"NoSuchKey", "404"}:
                return {}
            log_exception(
                logger,
                "ledger.store.read.failure",
                backend="s3",
                storage_key=self._key,
                error_code=code,
                duration_ms=monotonic_ms(start),
            )
            raise StoreUnavailable(f"Unable to read ledger object {self._key}") from e
        except BotoCoreError as e:
            log_exception(
                logger,
                "ledger.store.read.failure",
                backend="s3",
                storage_key=self._key,
                duration_ms=monotonic_ms(start),
            )
            raise StoreUnavailable(f"Unable to read ledger object {self._key}") from e
        try:
            return _decode_document(body)
        except (ValueError, ValidationError) as e:
            log_exception(
                logger, "ledger.store.decode.failure", backend="s3", storage_key=self._key
            )
            raise StoreUnavailable(f"Ledger object {self._key} is corrupt") from e

    def write_all(self, records: dict[str, AccountRecord]) -> None:
        start = time.monotonic()
        body = json.dumps(_encode_document(records)).encode("utf-8")
        max_attempts = 5
        for attempt in range(1, max_attempts + 1):
            try:
                self._client.put_object(
                    Bucket=self._bucket,
                    Key=self._key,
                    Body=body,
                    ContentType="application/json",
                )
                break
            except Exception as e:  # noqa: BLE001
                if attempt < max_attempts and self._should_retry_error(e):
                    delay_s = self._retry_delay_s(attempt)
                    error_code = None
                    if isinstance(e, ClientError):
                        error_code = (e.response.get("Error") or {}).get("Code")
                    log_event(
                        logger,
                        "ledger.store.write.retry",
                        backend="s3",
                        storage_key=self._key,
                        attempt=attempt,
                        delay_s=delay_s,
                        error_code=error_code,
                        error_type=type(e).__name__,
                    )
                    time.sleep(delay_s)
                    continue
                log_exception(
                    logger,
                    "ledger.store.write.failure",
                    backend="s3",
                    storage_key=self._key,
                    byte_size=len(body),
                    attempt=attempt,
                )
                raise StoreUnavailable(f"Unable to write ledger object {self._key}") from e
        log_event(
            logger,
            "ledger.store.write.success",
            backend="s3",
            records=len(records),
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )


class JsonBinLedgerStore(LedgerStore):
    backend = "jsonbin"

    def __init__(
        self,
        *,
        bin_id: str | None = None,
        master_key: str | None = None,
        base_url: str | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        bin_id = bin_id or settings.jsonbin_id
        master_key = master_key or settings.jsonbin_key
        if not bin_id or not master_key:
            raise StoreUnavailable("JsonBin backend requires JSONBIN_ID and JSONBIN_KEY")
        self._url = (base_url or settings.jsonbin_base_url).rstrip("/") + f"/b/{bin_id}"
        self._headers = {"X-Master-Key": master_key}
        self._client = client or httpx.Client(timeout=15.0, follow_redirects=True)

    def read_all(self) -> dict[str, AccountRecord]:
        start = time.monotonic()
        try:
            resp = self._client.get(f"{self._url}/latest", headers=self._headers)
            resp.raise_for_status()
            record = resp.json().get("record")
            return _decode_document(record)
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            log_exception(
                logger,
                "ledger.store.read.failure",
                backend="jsonbin",
                http_status=_http_status(e),
                duration_ms=monotonic_ms(start),
            )
            raise StoreUnavailable("Unable to read ledger from JsonBin") from e

    def write_all(self, records: dict[str, AccountRecord]) -> None:
        start = time.monotonic()
        try:
            resp = self._client.put(
                self._url,
                headers={**self._headers, "Content-Type": "application/json"},
                json=_encode_document(records),
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            log_exception(
                logger,
                "ledger.store.write.failure",
                backend="jsonbin",
                http_status=_http_status(e),
                duration_ms=monotonic_ms(start),
            )
            raise StoreUnavailable("Unable to write ledger to JsonBin") from e
        log_event(
            logger,
            "ledger.store.write.success",
            backend="jsonbin",
            records=len(records),
            duration_ms=monotonic_ms(start),
        )


def _http_status(error: Exception) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def _s3_region() -> str:
    # S3-compatible services report "auto"; boto3 needs a real region name
    region = settings.s3_region
    if not region or region.lower() == "auto":
        region = "us-east-1"
    return region


def _make_s3_client():
    from botocore.config import Config

    session = boto3.session.Session(
        aws_access_key_id=settings.s3_access_key_id,
        aws_secret_access_key=settings.s3_secret_access_key,
        region_name=_s3_region(),
    )
    config = Config(
        s3={"addressing_style": "virtual"},
        retries={"max_attempts": 3, "mode": "adaptive"},
        connect_timeout=30,
        read_timeout=60,
    )
    return session.client("s3", endpoint_url=settings.s3_endpoint_url or None, config=config)


def _local_ledger_path() -> Path:
    path = settings.ledger_path
    if not path.is_absolute():
        path = Path(os.getcwd()) / path
    return path


_store: LedgerStore | None = None


def get_ledger_store() -> LedgerStore:
    global _store  # noqa: PLW0603
    if _store is not None:
        return _store

    if settings.ledger_backend == "s3":
        _store = S3LedgerStore()
    elif settings.ledger_backend == "jsonbin":
        _store = JsonBinLedgerStore()
    else:
        _store = LocalLedgerStore(_local_ledger_path())
    log_event(logger, "ledger.store.selected", backend=_store.backend)
    return _store


def diagnose_ledger_store() -> dict[str, Any]:
    """
    Best-effort connectivity diagnostics for the configured ledger backend.

    Safe for production: never returns credentials and never writes to the ledger.
    """
    start = time.monotonic()
    result: dict[str, Any] = {"ok": True, "backend": settings.ledger_backend}
    if settings.ledger_backend == "local":
        result["path"] = str(_local_ledger_path())
    elif settings.ledger_backend == "s3":
        result["s3"] = {
            "endpoint_url": settings.s3_endpoint_url or None,
            "bucket": settings.s3_bucket,
            "key": settings.s3_ledger_key,
            "region": settings.s3_region,
        }
        if not settings.s3_access_key_id or not settings.s3_secret_access_key:
            return {**result, "ok": False, "error": "missing_s3_credentials"}
    elif not settings.jsonbin_id or not settings.jsonbin_key:
        return {**result, "ok": False, "error": "missing_jsonbin_credentials"}

    try:
        records = get_ledger_store().read_all()
    except Exception as e:  # noqa: BLE001
        result["ok"] = False
        result["error_type"] = type(e).__name__
        result["error"] = str(e)
        result["duration_ms"] = monotonic_ms(start)
        return result
    result["records"] = len(records)
    result["duration_ms"] = monotonic_ms(start)
    return result
