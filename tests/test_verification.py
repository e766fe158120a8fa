from __future__ import annotations

import json
import logging
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from tokenforge.artifacts import ArtifactStore
from tokenforge.config import VerificationConfig
from tokenforge.errors import InvalidInput, RegistrarError, VerificationFailed
from tokenforge.models import VerificationStatus
from tokenforge.verification import (
    VerificationOrchestrator,
    classify_status_message,
    is_retryable_message,
)

SUPPLY_1000 = "00000000000000000000000000000000000000000000000000000000000003e8"


class FakeTime:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def clock(self) -> float:
        return self.now


class FakeRegistrar:
    def __init__(self, submit_responses: list, status_responses: list | None = None) -> None:
        self.submit_responses = list(submit_responses)
        self.status_responses = list(status_responses or [])
        self.submissions: list[dict] = []
        self.polled: list[str] = []

    def submit_source(self, **kwargs) -> dict:
        self.submissions.append(kwargs)
        response = self.submit_responses.pop(0) if len(self.submit_responses) > 1 else self.submit_responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def check_status(self, guid: str) -> dict:
        self.polled.append(guid)
        if len(self.status_responses) > 1:
            return self.status_responses.pop(0)
        return self.status_responses[0]


def write_artifacts(root: Path) -> None:
    abi = [
        {
            "type": "constructor",
            "inputs": [{"name": "initialSupply", "type": "uint256"}],
        }
    ]
    (root / "ERC20__base.json").write_text(
        json.dumps({"contractName": "ERC20_base", "abi": abi, "bytecode": "0x6080"}), encoding="utf-8"
    )
    (root / "ERC20__base.verify.json").write_text(
        json.dumps(
            {
                "compilerVersion": "0.8.20+commit.a1b79de6",
                "standardJsonInput": {"language": "Solidity"},
                "sourceName": "contracts/__generated__/ERC20_base.sol",
                "contractName": "ERC20_base",
            }
        ),
        encoding="utf-8",
    )
    (root / "ERC721__base.json").write_text(
        json.dumps({"abi": [{"type": "function", "name": "safeMint"}], "bytecode": "0x6080"}), encoding="utf-8"
    )


class ClassificationTest(unittest.TestCase):
    def test_retryable_messages(self) -> None:
        self.assertTrue(is_retryable_message("Max rate limit reached"))
        self.assertTrue(is_retryable_message("Unable to locate ContractCode at 0xabc"))
        self.assertTrue(is_retryable_message("Service temporarily unavailable, please Try Again"))
        self.assertFalse(is_retryable_message("Invalid API Key"))
        self.assertFalse(is_retryable_message("Fail - Unable to verify. Compiled bytecode mismatch"))
        self.assertFalse(is_retryable_message(None))

    def test_status_messages(self) -> None:
        self.assertEqual(classify_status_message("Pass - Verified"), VerificationStatus.VERIFIED)
        self.assertIsNone(classify_status_message("Pending in queue"))
        self.assertEqual(classify_status_message("Already Verified"), VerificationStatus.VERIFIED)
        self.assertEqual(classify_status_message("Fail - Unable to verify"), VerificationStatus.FAILED)
        self.assertEqual(classify_status_message(""), VerificationStatus.FAILED)


class VerificationOrchestratorTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp = TemporaryDirectory()
        self.root = Path(self._temp.name)
        write_artifacts(self.root)
        self.time = FakeTime()
        self.logger = logging.getLogger("test_tokenforge_verification")
        self.logger.handlers.clear()
        self.logger.addHandler(logging.NullHandler())
        self.logger.propagate = False

    def tearDown(self) -> None:
        self._temp.cleanup()

    def make(self, registrar: FakeRegistrar) -> VerificationOrchestrator:
        return VerificationOrchestrator(
            registrar,
            ArtifactStore(self.root),
            VerificationConfig(),
            logger=self.logger,
            sleep=self.time.sleep,
            clock=self.time.clock,
        )

    def test_submit_encodes_constructor_args(self) -> None:
        registrar = FakeRegistrar([{"status": "1", "message": "OK", "result": "guid-1"}])
        result = self.make(registrar).submit("0xabc", "ERC20__base", ["1000"])

        self.assertTrue(result.ok)
        self.assertEqual(result.guid, "guid-1")
        sent = registrar.submissions[0]
        self.assertEqual(sent["constructor_args_hex"], SUPPLY_1000)
        self.assertEqual(sent["contract_name"], "contracts/__generated__/ERC20_base.sol:ERC20_base")
        self.assertEqual(sent["compiler_version"], "0.8.20+commit.a1b79de6")
        self.assertEqual(sent["standard_input"], {"language": "Solidity"})

    def test_submit_forwards_preencoded_args(self) -> None:
        registrar = FakeRegistrar([{"status": "1", "result": "guid-1"}])
        self.make(registrar).submit("0xabc", "ERC20__base", [1000], constructor_args_encoded="0xbeef")
        self.assertEqual(registrar.submissions[0]["constructor_args_hex"], "beef")

    def test_submit_already_verified(self) -> None:
        registrar = FakeRegistrar([{"status": "0", "result": "Contract source code already verified"}])
        result = self.make(registrar).submit("0xabc", "ERC20__base", [1000])
        self.assertTrue(result.ok)
        self.assertTrue(result.already_verified)

    def test_submit_classifies_rejections(self) -> None:
        rate_limited = self.make(FakeRegistrar([{"status": "0", "result": "Max rate limit reached"}]))
        self.assertTrue(rate_limited.submit("0xabc", "ERC20__base", [1]).retryable)
        bad_key = self.make(FakeRegistrar([{"status": "0", "result": "Invalid API Key"}]))
        self.assertFalse(bad_key.submit("0xabc", "ERC20__base", [1]).retryable)

    def test_transport_error_is_retryable(self) -> None:
        registrar = FakeRegistrar([RegistrarError("verification submit failed: connection reset")])
        result = self.make(registrar).submit("0xabc", "ERC20__base", [1])
        self.assertFalse(result.ok)
        self.assertTrue(result.retryable)

    def test_missing_verify_payload_is_fatal(self) -> None:
        registrar = FakeRegistrar([{"status": "1", "result": "guid"}])
        with self.assertRaises(VerificationFailed):
            self.make(registrar).submit("0xabc", "ERC721__base", [])
        self.assertEqual(registrar.submissions, [])

    def test_encode_without_constructor_inputs(self) -> None:
        orchestrator = self.make(FakeRegistrar([{}]))
        self.assertEqual(orchestrator.encode_constructor_args("ERC721__base", []), "")
        with self.assertRaises(InvalidInput):
            orchestrator.encode_constructor_args("ERC20__base", [])

    def test_verify_retries_then_polls_to_verified(self) -> None:
        registrar = FakeRegistrar(
            [
                {"status": "0", "result": "Unable to locate ContractCode at 0xabc"},
                {"status": "0", "result": "Max rate limit reached"},
                {"status": "1", "result": "guid-7"},
            ],
            [
                {"status": "0", "result": "Pending in queue"},
                {"status": "1", "result": "Pass - Verified"},
            ],
        )
        outcome = self.make(registrar).verify("0xabc", "ERC20__base", [1000])

        self.assertEqual(outcome.status, VerificationStatus.VERIFIED)
        self.assertEqual(outcome.guid, "guid-7")
        self.assertEqual(outcome.message, "Pass - Verified")
        self.assertEqual(len(registrar.submissions), 3)
        self.assertEqual(registrar.polled, ["guid-7", "guid-7"])
        self.assertEqual(self.time.sleeps, [10.0, 20.0, 10.0, 10.0])

    def test_non_retryable_rejection_stops_immediately(self) -> None:
        registrar = FakeRegistrar([{"status": "0", "result": "Invalid API Key"}])
        outcome = self.make(registrar).verify("0xabc", "ERC20__base", [1000])
        self.assertEqual(outcome.status, VerificationStatus.FAILED)
        self.assertEqual(outcome.message, "Invalid API Key")
        self.assertEqual(len(registrar.submissions), 1)
        self.assertEqual(self.time.sleeps, [])

    def test_exhausted_retries_surface_as_retryable(self) -> None:
        registrar = FakeRegistrar([{"status": "0", "result": "Max rate limit reached"}])
        outcome = self.make(registrar).verify("0xabc", "ERC20__base", [1000])
        self.assertEqual(outcome.status, VerificationStatus.RETRYABLE)
        self.assertEqual(outcome.message, "Max rate limit reached")
        self.assertIsNone(outcome.guid)
        self.assertEqual(len(registrar.submissions), 5)
        self.assertEqual(self.time.sleeps, [10.0, 20.0, 30.0, 40.0])

    def test_already_verified_submission(self) -> None:
        registrar = FakeRegistrar([{"status": "0", "result": "Already Verified"}])
        outcome = self.make(registrar).verify("0xabc", "ERC20__base", [1000])
        self.assertEqual(outcome.status, VerificationStatus.VERIFIED)
        self.assertEqual(registrar.polled, [])

    def test_poll_budget_exhaustion_is_pending(self) -> None:
        registrar = FakeRegistrar([{"status": "1", "result": "guid-9"}], [{"status": "0", "result": "Pending in queue"}])
        outcome = self.make(registrar).verify("0xabc", "ERC20__base", [1000])
        self.assertEqual(outcome.status, VerificationStatus.PENDING)
        self.assertEqual(outcome.guid, "guid-9")
        self.assertEqual(len(registrar.polled), 60)

    def test_failed_status_is_terminal(self) -> None:
        registrar = FakeRegistrar([{"status": "1", "result": "g"}], [{"status": "0", "result": "Fail - Unable to verify"}])
        outcome = self.make(registrar).verify("0xabc", "ERC20__base", [1000])
        self.assertEqual(outcome.status, VerificationStatus.FAILED)
        self.assertEqual(outcome.message, "Fail - Unable to verify")
        self.assertEqual(outcome.guid, "g")

    def test_resume_polling_by_guid(self) -> None:
        registrar = FakeRegistrar([{}], [{"status": "1", "result": "Pass - Verified"}])
        outcome = self.make(registrar).wait_for_result("guid-resumed")
        self.assertEqual(outcome.status, VerificationStatus.VERIFIED)
        self.assertEqual(registrar.submissions, [])
        self.assertEqual(registrar.polled, ["guid-resumed"])

    def test_missing_verify_payload_fails_verification(self) -> None:
        registrar = FakeRegistrar([{"status": "1", "result": "guid"}])
        outcome = self.make(registrar).verify("0xabc", "ERC721__base", [])
        self.assertEqual(outcome.status, VerificationStatus.FAILED)
        self.assertIn("ERC721__base", outcome.message)
        self.assertIsNone(outcome.guid)
        self.assertEqual(registrar.submissions, [])
        self.assertEqual(self.time.sleeps, [])

    def test_finished_event_carries_outcome_fields(self) -> None:
        registrar = FakeRegistrar([{"status": "0", "result": "Invalid API Key"}])
        with self.assertLogs(self.logger, level="INFO") as captured:
            outcome = self.make(registrar).verify("0xabc", "ERC20__base", [1000])
        self.assertEqual(outcome.status, VerificationStatus.FAILED)
        finished = [record for record in captured.records if record.getMessage() == "verification_finished"]
        self.assertEqual(len(finished), 1)
        self.assertEqual(finished[0].levelno, logging.WARNING)
        self.assertEqual(
            finished[0].extra_fields,
            {"address": "0xabc", "status": "failed", "guid": None, "result_message": "Invalid API Key"},
        )


if __name__ == "__main__":
    unittest.main()
