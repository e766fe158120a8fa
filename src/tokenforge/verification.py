from __future__ import annotations

import logging
import time
from typing import Any, Callable, Sequence

from eth_abi import encode as abi_encode

from .app_logging import get_logger, log_with_fields
from .artifacts import ArtifactStore
from .config import VerificationConfig
from .errors import ArtifactNotFound, InvalidInput, RegistrarError, VerificationFailed
from .models import SubmissionResult, VerificationOutcome, VerificationStatus
from .registrar import RegistrarClient
from .utils import strip_hex_prefix

# Lower-cased fragments of registrar messages that mean "try again later".
TRANSIENT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "unable to locate contract code",
    "unable to locate contractcode",
    "temporarily",
    "timeout",
    "timed out",
    "try again",
    "not indexed",
    "indexing",
)


def is_retryable_message(message: str | None) -> bool:
    text = (message or "").lower()
    return any(pattern in text for pattern in TRANSIENT_PATTERNS)


def classify_status_message(message: str | None) -> VerificationStatus | None:
    """Map a free-text status result to a terminal status, or None while pending."""
    text = (message or "").lower()
    if "pass" in text and "verified" in text:
        return VerificationStatus.VERIFIED
    if "pending" in text:
        return None
    if "already verified" in text:
        return VerificationStatus.VERIFIED
    return VerificationStatus.FAILED


def _coerce_abi_value(abi_type: str, value: Any) -> Any:
    if abi_type.endswith("]"):
        inner = abi_type[: abi_type.rindex("[")]
        return [_coerce_abi_value(inner, item) for item in value]
    if abi_type.startswith(("uint", "int")) and isinstance(value, str):
        return int(value, 0)
    if abi_type == "bool" and isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    if abi_type.startswith("bytes") and isinstance(value, str):
        return bytes.fromhex(strip_hex_prefix(value))
    return value


class VerificationOrchestrator:
    def __init__(
        self,
        client: RegistrarClient,
        artifacts: ArtifactStore,
        config: VerificationConfig,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.artifacts = artifacts
        self.config = config
        self.logger = logger or get_logger()
        self.sleep = sleep
        self.clock = clock

    def encode_constructor_args(self, artifact_key: str, args: Sequence[Any]) -> str:
        types = self.artifacts.constructor_types(artifact_key)
        if not types:
            return ""
        if len(types) != len(args):
            raise InvalidInput(
                f"Constructor of {artifact_key} takes {len(types)} arguments, got {len(args)}"
            )
        try:
            values = [_coerce_abi_value(abi_type, value) for abi_type, value in zip(types, args)]
            return abi_encode(types, values).hex()
        except (TypeError, ValueError) as exc:
            raise InvalidInput(f"Cannot ABI-encode constructor arguments for {artifact_key}: {exc}") from exc

    def submit(
        self,
        address: str,
        artifact_key: str,
        constructor_args: Sequence[Any],
        constructor_args_encoded: str | None = None,
    ) -> SubmissionResult:
        try:
            payload = self.artifacts.load_verify_payload(artifact_key)
        except ArtifactNotFound as exc:
            raise VerificationFailed(f"Verification payload unavailable for {artifact_key}", detail=str(exc)) from exc

        if constructor_args_encoded:
            ctor_hex = strip_hex_prefix(constructor_args_encoded)
        else:
            ctor_hex = self.encode_constructor_args(artifact_key, constructor_args)

        try:
            response = self.client.submit_source(
                address=address,
                standard_input=payload["standardJsonInput"],
                compiler_version=str(payload["compilerVersion"]),
                contract_name=f"{payload['sourceName']}:{payload['contractName']}",
                constructor_args_hex=ctor_hex,
            )
        except RegistrarError as exc:
            return SubmissionResult(ok=False, retryable=True, error=exc.message)

        if str(response.get("status")) == "1":
            return SubmissionResult(ok=True, guid=str(response.get("result")))

        message = str(response.get("result") or response.get("message") or "Unknown error")
        if "already verified" in message.lower():
            return SubmissionResult(ok=True, already_verified=True)
        return SubmissionResult(ok=False, retryable=is_retryable_message(message), error=message)

    def poll(self, guid: str) -> dict[str, Any]:
        return self.client.check_status(guid)

    def verify(
        self,
        address: str,
        artifact_key: str,
        constructor_args: Sequence[Any],
        constructor_args_encoded: str | None = None,
    ) -> VerificationOutcome:
        submission = SubmissionResult(ok=False, retryable=True, error="No submission attempted")
        attempts = self.config.submit_attempts
        for attempt in range(1, attempts + 1):
            try:
                submission = self.submit(address, artifact_key, constructor_args, constructor_args_encoded)
            except VerificationFailed as exc:
                return self._finish(address, VerificationOutcome(VerificationStatus.FAILED, None, exc.message))
            log_with_fields(
                self.logger,
                logging.INFO,
                "verification_submit_attempt",
                address=address,
                artifact_key=artifact_key,
                attempt=attempt,
                ok=submission.ok,
                retryable=submission.retryable,
                error=submission.error,
            )
            if submission.ok:
                break
            if not submission.retryable:
                outcome = VerificationOutcome(VerificationStatus.FAILED, None, submission.error or "Verification rejected")
                return self._finish(address, outcome)
            if attempt < attempts:
                self.sleep(self.config.backoff_seconds * attempt)

        if submission.already_verified:
            return self._finish(address, VerificationOutcome(VerificationStatus.VERIFIED, None, "Already verified"))
        if not submission.ok:
            return self._finish(
                address,
                VerificationOutcome(VerificationStatus.RETRYABLE, None, submission.error or "Verification not accepted"),
            )
        return self.wait_for_result(submission.guid or "", address=address)

    def wait_for_result(self, guid: str, address: str | None = None) -> VerificationOutcome:
        """Poll an accepted submission until terminal or the poll budget runs out."""
        started = self.clock()
        while self.clock() - started < self.config.poll_budget_seconds:
            self.sleep(self.config.poll_interval_seconds)
            try:
                response = self.poll(guid)
            except RegistrarError as exc:
                log_with_fields(self.logger, logging.WARNING, "verification_poll_error", guid=guid, error=exc.message)
                continue

            message = str(response.get("result") or "")
            status = classify_status_message(message)
            log_with_fields(self.logger, logging.INFO, "verification_poll", guid=guid, result=message)
            if status is None:
                continue
            return self._finish(address, VerificationOutcome(status, guid, message))

        return self._finish(address, VerificationOutcome(VerificationStatus.PENDING, guid, "Verification still pending"))

    def _finish(self, address: str | None, outcome: VerificationOutcome) -> VerificationOutcome:
        log_with_fields(
            self.logger,
            logging.INFO if outcome.status != VerificationStatus.FAILED else logging.WARNING,
            "verification_finished",
            address=address,
            status=outcome.status.value,
            guid=outcome.guid,
            result_message=outcome.message,
        )
        return outcome
