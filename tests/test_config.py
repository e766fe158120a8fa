from pathlib import Path
from tempfile import TemporaryDirectory
import os
import unittest
from unittest import mock

from tokenforge.config import load_config
from tokenforge.errors import ConfigError


MINIMAL = """
paths:
  artifacts: "./artifacts-precompiled"
  runtime: "./runtime"
  db: "./var/tokenforge.db"
  log: "./var/tokenforge.log"
""".strip()


class ConfigTest(unittest.TestCase):
    def write(self, root: Path, text: str) -> Path:
        config_path = root / "tokenforge.yaml"
        config_path.write_text(text, encoding="utf-8")
        return config_path

    def test_load_minimal_config_with_defaults(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            config = load_config(self.write(root, MINIMAL))
            self.assertEqual(config.scheduler.concurrency, 1)
            self.assertEqual(config.toolchain.network, "sepolia")
            self.assertEqual(config.toolchain.timeout_seconds, 300.0)
            self.assertEqual(config.verification.submit_attempts, 5)
            self.assertEqual(config.verification.poll_budget_seconds, 600.0)
            self.assertEqual(config.paths.artifacts.resolve(), (root / "artifacts-precompiled").resolve())

    def test_overrides(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            text = MINIMAL + """
scheduler:
  concurrency: 2
  wait_poll_seconds: 0.1
toolchain:
  command: "node deploy.js {network}"
  project_dir: "./toolchain"
  network: mainnet
verification:
  chain_id: 1
  backoff_seconds: 1
"""
            config = load_config(self.write(root, text))
            self.assertEqual(config.scheduler.concurrency, 2)
            self.assertEqual(config.toolchain.command, "node deploy.js {network}")
            self.assertEqual(config.toolchain.project_dir, root.resolve() / "toolchain")
            self.assertEqual(config.verification.chain_id, 1)
            self.assertEqual(config.verification.backoff_seconds, 1.0)

    def test_invalid_values(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            with self.assertRaises(ConfigError):
                load_config(self.write(root, MINIMAL + "\nscheduler:\n  concurrency: 0\n"))
            with self.assertRaises(ConfigError):
                load_config(self.write(root, MINIMAL + "\ntoolchain:\n  timeout_seconds: soon\n"))
            with self.assertRaises(ConfigError):
                load_config(self.write(root, "paths:\n  runtime: ./runtime\n"))

    def test_secrets_come_from_environment(self) -> None:
        with TemporaryDirectory() as temp_dir:
            config = load_config(self.write(Path(temp_dir), MINIMAL))
            env = {"DEPLOYER_PRIVATE_KEY": "0xkey", "SEPOLIA_RPC_URL": "http://rpc", "ETHERSCAN_API_KEY": "k"}
            with mock.patch.dict(os.environ, env):
                credentials = config.deployer_credentials()
                self.assertEqual(credentials.private_key, "0xkey")
                self.assertEqual(credentials.rpc_url, "http://rpc")
                self.assertEqual(config.registrar_api_key(), "k")
                self.assertNotIn("0xkey", repr(credentials))


if __name__ == "__main__":
    unittest.main()
