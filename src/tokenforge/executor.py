from __future__ import annotations

import json
import os
import shlex
import shutil
import signal
import subprocess
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .config import ToolchainConfig
from .errors import ArtifactNotFound, DeploymentExecutionFailed, DeploymentOutputMissing
from .models import DeploymentResult, ExecutionRequest
from .utils import strip_bytecode_prefix, utc_now_iso

RESULT_FILENAME = "deploy-result.json"
STDOUT_FILENAME = "toolchain.stdout.log"
STDERR_FILENAME = "toolchain.stderr.log"


class DeploymentExecutor:
    """Runs the external compile/deploy toolchain for one precompiled artifact.

    The toolchain gets its inputs through environment variables and reports back
    by writing a JSON result file at `DEPLOY_RESULT_PATH`. Only a zero exit code
    together with a fresh result file counts as success.
    """

    def __init__(self, config: ToolchainConfig, runtime_dir: Path) -> None:
        self.config = config
        self.runtime_dir = Path(runtime_dir)

    def execute(self, request: ExecutionRequest) -> DeploymentResult:
        artifact_path = Path(request.artifact_path)
        if not artifact_path.is_file():
            raise ArtifactNotFound(f"Artifact not found for {request.artifact_key}: {artifact_path}")
        bytecode = self._read_bytecode(artifact_path)

        with self._workdir(request.job_id) as workdir:
            result_path = workdir / RESULT_FILENAME
            cmd = self._build_command(request, result_path)
            env = self._build_env(request, result_path)
            returncode, stdout, stderr = self._run(cmd, env, workdir)
            output = _join_output(stdout, stderr)

            if returncode != 0:
                raise DeploymentExecutionFailed(
                    f"Deployment toolchain exited with code {returncode}",
                    detail=output,
                )
            if not result_path.is_file():
                raise DeploymentOutputMissing(
                    "Deployment toolchain exited 0 but wrote no result file",
                    detail=output,
                )

            raw = self._consume_result(result_path, output)

        address = raw.get("address")
        if not address:
            raise DeploymentExecutionFailed("Deployment result has no contract address", detail=output)

        return DeploymentResult(
            address=str(address),
            tx_hash=raw.get("txHash") or None,
            deployer_address=raw.get("deployerAddress") or None,
            network=str(raw.get("network") or request.network),
            constructor_args=list(request.constructor_args),
            constructor_args_encoded=strip_bytecode_prefix(raw.get("deployTransactionData"), bytecode),
            deployed_at=str(raw.get("deployedAt") or utc_now_iso()),
            artifact_key=request.artifact_key,
        )

    def _read_bytecode(self, artifact_path: Path) -> str:
        try:
            artifact = json.loads(artifact_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ArtifactNotFound(f"Unreadable artifact {artifact_path}: {exc}") from exc
        bytecode = artifact.get("bytecode") if isinstance(artifact, dict) else None
        if not bytecode:
            raise ArtifactNotFound(f"Artifact has no bytecode: {artifact_path}")
        return str(bytecode)

    @contextmanager
    def _workdir(self, job_id: str) -> Iterator[Path]:
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        workdir = Path(tempfile.mkdtemp(prefix=f"{job_id}-", dir=self.runtime_dir))
        try:
            yield workdir
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def _build_command(self, request: ExecutionRequest, result_path: Path) -> list[str]:
        return [
            part.format(
                network=request.network,
                artifact_key=request.artifact_key,
                result_path=str(result_path),
            )
            for part in shlex.split(self.config.command)
        ]

    def _build_env(self, request: ExecutionRequest, result_path: Path) -> dict[str, str]:
        env = dict(os.environ)
        env.update(
            {
                "ARTIFACT_KEY": request.artifact_key,
                "ARTIFACT_PATH": str(Path(request.artifact_path).resolve()),
                "CONTRACT_NAME": request.contract_name,
                "CONSTRUCTOR_ARGS": json.dumps(list(request.constructor_args)),
                "DEPLOY_NETWORK": request.network,
                "DEPLOY_RESULT_PATH": str(result_path),
            }
        )
        if request.credentials.private_key:
            env["DEPLOYER_PRIVATE_KEY"] = request.credentials.private_key
        if request.credentials.rpc_url:
            env["RPC_URL"] = request.credentials.rpc_url
        return env

    def _run(self, cmd: list[str], env: dict[str, str], workdir: Path) -> tuple[int, str, str]:
        stdout_path = workdir / STDOUT_FILENAME
        stderr_path = workdir / STDERR_FILENAME
        cwd = str(self.config.project_dir) if self.config.project_dir else str(workdir)
        with stdout_path.open("wb") as stdout_handle, stderr_path.open("wb") as stderr_handle:
            try:
                process = subprocess.Popen(
                    cmd,
                    cwd=cwd,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    start_new_session=True,
                )
            except OSError as exc:
                raise DeploymentExecutionFailed(f"Could not start deployment toolchain: {exc}") from exc

            try:
                returncode = process.wait(timeout=self.config.timeout_seconds)
            except subprocess.TimeoutExpired:
                _kill_process_group(process)
                raise DeploymentExecutionFailed(
                    f"Deployment toolchain timed out after {self.config.timeout_seconds:g}s",
                    detail=_join_output(
                        self._read_capped(stdout_path),
                        self._read_capped(stderr_path),
                    ),
                ) from None
            except BaseException:
                _kill_process_group(process)
                raise

        return returncode, self._read_capped(stdout_path), self._read_capped(stderr_path)

    def _read_capped(self, path: Path) -> str:
        limit = self.config.max_output_bytes
        try:
            with path.open("rb") as handle:
                data = handle.read(limit + 1)
        except OSError:
            return ""
        text = data[:limit].decode("utf-8", errors="replace")
        if len(data) > limit:
            text += f"\n... [output truncated at {limit} bytes]"
        return text

    def _consume_result(self, result_path: Path, output: str) -> dict[str, Any]:
        try:
            raw = json.loads(result_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise DeploymentExecutionFailed(f"Deployment result file is not valid JSON: {exc}", detail=output) from exc
        finally:
            result_path.unlink(missing_ok=True)
        if not isinstance(raw, dict):
            raise DeploymentExecutionFailed("Deployment result file must hold a JSON object", detail=output)
        return raw


def _kill_process_group(process: subprocess.Popen) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        process.kill()
    process.wait()


def _join_output(stdout: str, stderr: str) -> str:
    return "\n".join(part for part in (stdout.strip(), stderr.strip()) if part)
