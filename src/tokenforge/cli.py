from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from .app_logging import log_with_fields
from .artifacts import ArtifactStore, resolve_artifact_key, validate_modules
from .config import AppConfig, load_config
from .errors import (
    DeploymentTimedOut,
    InvalidInput,
    JobFailed,
    JobNotFound,
    TokenForgeError,
)
from .models import DeployRequest, Job, JobKind, VerifyRequest, to_jsonable
from .service import Runtime, build_runtime

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tokenforge", description="Deploy and verify precompiled token contracts")
    parser.add_argument("--config", required=True, help="Path to tokenforge YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    resolve = subparsers.add_parser("resolve", help="Print the artifact key for a kind and module set")
    resolve.add_argument("--kind", required=True, help="Token kind, e.g. ERC20")
    resolve.add_argument("--module", action="append", default=[], help="Feature module (repeatable)")

    subparsers.add_parser("artifacts", help="List precompiled artifact keys")

    deploy = subparsers.add_parser("deploy", help="Deploy a precompiled artifact and wait for the result")
    deploy.add_argument("--kind", required=True, help="Token kind, e.g. ERC20")
    deploy.add_argument("--module", action="append", default=[], help="Feature module (repeatable)")
    deploy.add_argument("--args", default="[]", help="Constructor arguments as a JSON array")
    deploy.add_argument("--network", default=None, help="Target network (defaults to toolchain.network)")
    deploy.add_argument("--verify", action="store_true", help="Submit source verification after deploying")

    verify = subparsers.add_parser("verify", help="Verify an already deployed contract")
    verify.add_argument("--address", required=True, help="Deployed contract address")
    verify.add_argument("--artifact-key", required=True, help="Artifact key the contract was built from")
    verify.add_argument("--args", default="[]", help="Constructor arguments as a JSON array")
    verify.add_argument("--encoded", default=None, help="ABI-encoded constructor arguments (hex)")

    resume = subparsers.add_parser("resume-verification", help="Resume polling a pending verification")
    resume.add_argument("--guid", required=True, help="Registrar tracking id")
    resume.add_argument("--address", default=None, help="Contract address (looked up from history if omitted)")

    jobs = subparsers.add_parser("jobs", help="List recent jobs from the audit store")
    jobs.add_argument("--limit", type=int, default=20, help="Maximum number of jobs to show")

    subparsers.add_parser("status", help="Show job counts by state")
    return parser


def parse_args_json(raw: str) -> list[Any]:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InvalidInput(f"--args must be a JSON array: {exc}") from exc
    if not isinstance(value, list):
        raise InvalidInput("--args must be a JSON array")
    return value


def _print_json(value: Any) -> None:
    print(json.dumps(to_jsonable(value), indent=2, sort_keys=True))


def _run_job(runtime: Runtime, kind: JobKind, payload: Any, timeout_seconds: float) -> Job:
    job = runtime.scheduler.create_job(kind, payload)
    print(f"job {job.job_id} queued ({kind.value})", file=sys.stderr)
    return runtime.scheduler.wait_for_job(
        job.job_id,
        timeout_seconds=timeout_seconds,
        poll_interval_seconds=runtime.config.scheduler.wait_poll_seconds,
    )


def _verification_timeout(config: AppConfig) -> float:
    verification = config.verification
    backoff_total = sum(verification.backoff_seconds * n for n in range(1, verification.submit_attempts))
    return backoff_total + verification.poll_budget_seconds + verification.poll_interval_seconds * 2 + 60


def cmd_resolve(config: AppConfig, kind: str, modules: list[str]) -> int:
    validate_modules(kind, modules)
    key = resolve_artifact_key(kind, modules)
    available = ArtifactStore(config.paths.artifacts).exists(key)
    print(f"{key} {'available' if available else 'missing'}")
    return EXIT_OK if available else EXIT_FAILED


def cmd_artifacts(config: AppConfig) -> int:
    keys = ArtifactStore(config.paths.artifacts).list_keys()
    if not keys:
        print("(no precompiled artifacts)")
    for key in keys:
        print(key)
    return EXIT_OK


def cmd_deploy(runtime: Runtime, request: DeployRequest) -> int:
    job = _run_job(runtime, JobKind.DEPLOY, request, runtime.config.scheduler.wait_timeout_seconds)
    _print_json(job.result)
    if request.verify:
        verify_request = runtime.service.follow_up_verification(job.result)
        verify_job = _run_job(runtime, JobKind.VERIFY, verify_request, _verification_timeout(runtime.config))
        _print_json(verify_job.result)
    return EXIT_OK


def cmd_verify(runtime: Runtime, request: VerifyRequest) -> int:
    job = _run_job(runtime, JobKind.VERIFY, request, _verification_timeout(runtime.config))
    _print_json(job.result)
    return EXIT_OK


def cmd_resume(runtime: Runtime, guid: str, address: str | None) -> int:
    if address is None:
        deployment = runtime.store.find_deployment_by_guid(guid)
        address = deployment["address"] if deployment else ""
        artifact_key = deployment["artifact_key"] if deployment else ""
    else:
        deployment = runtime.store.get_deployment(address)
        artifact_key = deployment["artifact_key"] if deployment else ""
    request = VerifyRequest(address=address, artifact_key=artifact_key or "", guid=guid)
    job = _run_job(runtime, JobKind.VERIFY, request, _verification_timeout(runtime.config))
    _print_json(job.result)
    return EXIT_OK


def cmd_jobs(runtime: Runtime, limit: int) -> int:
    records = runtime.store.list_job_records(limit)
    if not records:
        print("(no jobs yet)")
    for record in records:
        error = f" error={record['error']['message']}" if record["error"] else ""
        print(f"{record['job_id']} {record['kind']:6} {record['state']:9} created={record['created_at']}{error}")
    return EXIT_OK


def cmd_status(runtime: Runtime) -> int:
    counts = runtime.store.summary_counts()
    print("Jobs:")
    for state in ["queued", "running", "succeeded", "failed"]:
        print(f"  {state:12} {counts.get(state, 0)}")
    return EXIT_OK


def _dispatch(args: argparse.Namespace, config: AppConfig) -> int:
    if args.command == "resolve":
        return cmd_resolve(config, args.kind, args.module)
    if args.command == "artifacts":
        return cmd_artifacts(config)

    runtime = build_runtime(config)
    try:
        if args.command == "deploy":
            request = DeployRequest(
                kind=args.kind,
                modules=list(args.module),
                constructor_args=parse_args_json(args.args),
                network=args.network,
                verify=bool(args.verify),
            )
            return cmd_deploy(runtime, request)
        if args.command == "verify":
            request = VerifyRequest(
                address=args.address,
                artifact_key=args.artifact_key,
                constructor_args=parse_args_json(args.args),
                constructor_args_encoded=args.encoded,
            )
            return cmd_verify(runtime, request)
        if args.command == "resume-verification":
            return cmd_resume(runtime, args.guid, args.address)
        if args.command == "jobs":
            return cmd_jobs(runtime, args.limit)
        if args.command == "status":
            return cmd_status(runtime)
    except KeyboardInterrupt:
        log_with_fields(runtime.logger, logging.INFO, "shutdown", reason="keyboard_interrupt")
        return EXIT_FAILED
    finally:
        # a timed-out wait leaves the job running; let it record its outcome
        runtime.scheduler.wait_idle(runtime.config.toolchain.timeout_seconds)
        runtime.close()
    raise InvalidInput(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = load_config(args.config)
        return _dispatch(args, config)
    except (InvalidInput, JobNotFound) as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return EXIT_USAGE
    except (JobFailed, DeploymentTimedOut) as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        if exc.detail:
            print(exc.detail, file=sys.stderr)
        return EXIT_FAILED
    except TokenForgeError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return EXIT_USAGE


if __name__ == "__main__":
    raise SystemExit(main())
