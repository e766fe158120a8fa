from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from .app_logging import log_with_fields, setup_logger
from .artifacts import ArtifactStore, resolve_artifact_key, validate_modules
from .config import AppConfig, ensure_local_paths
from .errors import ConfigError, DeploymentExecutionFailed, VerificationFailed, VerificationRetryable
from .executor import DeploymentExecutor
from .models import (
    DeployerCredentials,
    DeploymentResult,
    DeployRequest,
    ExecutionRequest,
    JobKind,
    VerificationOutcome,
    VerificationStatus,
    VerifyRequest,
)
from .registrar import RegistrarClient
from .scheduler import JobScheduler
from .store import JobStore
from .utils import new_job_id
from .verification import VerificationOrchestrator


class DeploymentService:
    """Job handlers for the deploy and verify job kinds."""

    def __init__(
        self,
        artifacts: ArtifactStore,
        executor: DeploymentExecutor,
        orchestrator_factory: Callable[[], VerificationOrchestrator] | None,
        store: JobStore | None,
        network: str,
        credentials: DeployerCredentials,
        logger: logging.Logger,
    ) -> None:
        self.artifacts = artifacts
        self.executor = executor
        self.orchestrator_factory = orchestrator_factory
        self.store = store
        self.network = network
        self.credentials = credentials
        self.logger = logger

    def handlers(self) -> dict[JobKind, Callable]:
        return {JobKind.DEPLOY: self.deploy, JobKind.VERIFY: self.verify}

    def deploy(self, request: DeployRequest, job_id: str | None = None) -> DeploymentResult:
        modules = validate_modules(request.kind, request.modules)
        artifact_key = resolve_artifact_key(request.kind, modules)
        artifact_path = self.artifacts.require(artifact_key)
        network = request.network or self.network

        result = self.executor.execute(
            ExecutionRequest(
                job_id=job_id or new_job_id(),
                artifact_key=artifact_key,
                artifact_path=str(artifact_path),
                contract_name=self.artifacts.contract_name(artifact_key),
                constructor_args=list(request.constructor_args),
                network=network,
                credentials=self.credentials,
            )
        )
        if not result.address:
            raise DeploymentExecutionFailed("Deployment returned no contract address")

        if self.store is not None:
            self.store.record_deployment(result, job_id)
        log_with_fields(
            self.logger,
            logging.INFO,
            "deployment_completed",
            artifact_key=artifact_key,
            address=result.address,
            tx_hash=result.tx_hash,
            network=result.network,
        )
        return result

    def verify(self, request: VerifyRequest, job_id: str | None = None) -> VerificationOutcome:
        if self.orchestrator_factory is None:
            raise ConfigError("Source verification is not configured")
        orchestrator = self.orchestrator_factory()

        if request.guid:
            outcome = orchestrator.wait_for_result(request.guid, address=request.address)
        else:
            outcome = orchestrator.verify(
                request.address,
                request.artifact_key,
                request.constructor_args,
                request.constructor_args_encoded,
            )

        if self.store is not None and request.address:
            self.store.update_verification(request.address, outcome)

        if outcome.status == VerificationStatus.FAILED:
            raise VerificationFailed(outcome.message or "Verification failed", detail=outcome.guid)
        if outcome.status == VerificationStatus.RETRYABLE:
            raise VerificationRetryable(outcome.message or "Verification can be retried later")
        return outcome

    def follow_up_verification(self, result: DeploymentResult) -> VerifyRequest:
        return VerifyRequest(
            address=result.address,
            artifact_key=result.artifact_key or "",
            constructor_args=list(result.constructor_args),
            constructor_args_encoded=result.constructor_args_encoded or None,
        )


@dataclass(slots=True)
class Runtime:
    config: AppConfig
    logger: logging.Logger
    store: JobStore
    artifacts: ArtifactStore
    service: DeploymentService
    scheduler: JobScheduler

    def close(self) -> None:
        self.store.close()


def build_runtime(config: AppConfig, logger: logging.Logger | None = None) -> Runtime:
    ensure_local_paths(config)
    logger = logger or setup_logger(config.paths.log)
    store = JobStore(config.paths.db)
    store.init_schema()
    artifacts = ArtifactStore(config.paths.artifacts)
    executor = DeploymentExecutor(config.toolchain, config.paths.runtime)

    def orchestrator_factory() -> VerificationOrchestrator:
        client = RegistrarClient(config.verification, config.registrar_api_key())
        return VerificationOrchestrator(client, artifacts, config.verification, logger=logger)

    service = DeploymentService(
        artifacts=artifacts,
        executor=executor,
        orchestrator_factory=orchestrator_factory,
        store=store,
        network=config.toolchain.network,
        credentials=config.deployer_credentials(),
        logger=logger,
    )
    scheduler = JobScheduler(
        service.handlers(),
        concurrency=config.scheduler.concurrency,
        retention=config.scheduler.retention,
        store=store,
        logger=logger,
    )
    return Runtime(
        config=config,
        logger=logger,
        store=store,
        artifacts=artifacts,
        service=service,
        scheduler=scheduler,
    )
