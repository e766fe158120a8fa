from __future__ import annotations

import json
import logging
from typing import Any

import requests

from .config import VerificationConfig
from .errors import ConfigError, RegistrarError

LOGGER = logging.getLogger(__name__)


class RegistrarClient:
    """Client for an Etherscan-compatible source verification API."""

    def __init__(
        self,
        config: VerificationConfig,
        api_key: str | None,
        session: requests.Session | None = None,
    ) -> None:
        if not api_key:
            raise ConfigError(f"{config.api_key_env} is not configured")
        self.config = config
        self.api_key = api_key
        self.session = session or requests.Session()

    def _params(self, **extra: Any) -> dict[str, Any]:
        return {"chainid": self.config.chain_id, "apikey": self.api_key, "module": "contract", **extra}

    def _decode(self, response: requests.Response, context: str) -> dict[str, Any]:
        try:
            response.raise_for_status()
            body = response.json()
        except requests.HTTPError as exc:
            raise RegistrarError(f"{context} failed: HTTP {response.status_code}", detail=response.text) from exc
        except ValueError as exc:
            raise RegistrarError(f"{context} returned a non-JSON body", detail=response.text) from exc
        if not isinstance(body, dict):
            raise RegistrarError(f"{context} returned an unexpected payload", detail=json.dumps(body))
        return body

    def submit_source(
        self,
        address: str,
        standard_input: dict[str, Any],
        compiler_version: str,
        contract_name: str,
        constructor_args_hex: str,
    ) -> dict[str, Any]:
        version = compiler_version if compiler_version.startswith("v") else f"v{compiler_version}"
        form = self._params(
            action="verifysourcecode",
            contractaddress=address,
            sourceCode=json.dumps(standard_input),
            codeformat="solidity-standard-json-input",
            contractname=contract_name,
            compilerversion=version,
            constructorArguments=constructor_args_hex,
        )
        try:
            response = self.session.post(
                self.config.api_url,
                data=form,
                timeout=self.config.request_timeout_seconds,
            )
        except requests.RequestException as exc:
            raise RegistrarError(f"verification submit failed: {exc}") from exc
        body = self._decode(response, "verification submit")
        LOGGER.debug("registrar submit response: %s", body)
        return body

    def check_status(self, guid: str) -> dict[str, Any]:
        try:
            response = self.session.get(
                self.config.api_url,
                params=self._params(action="checkverifystatus", guid=guid),
                timeout=self.config.request_timeout_seconds,
            )
        except requests.RequestException as exc:
            raise RegistrarError(f"verification status check failed: {exc}") from exc
        body = self._decode(response, "verification status check")
        LOGGER.debug("registrar status response: %s", body)
        return body
