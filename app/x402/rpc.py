# app/x402/rpc.py
"""
Solana JSON-RPC access with endpoint failover.

The settlement ledger is reached through an ordered list of equivalent RPC
endpoints. EndpointFailoverPool runs an operation against the preferred
endpoint and, on a transient failure, moves on to the next one (wrapping),
trying each endpoint at most once per call. The endpoint that answered
becomes the preferred one for later calls.

SolanaRpcClient exposes the handful of ledger operations the payment engine
needs on top of the pool:
- getBalance, getLatestBlockhash, sendTransaction
- getSignatureStatuses, getTransaction, getAccountInfo
"""
import base64
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar
from urllib.parse import urlsplit

import requests
from requests.exceptions import RequestException

from app.core.config import settings
from app.x402.errors import EndpointPoolExhaustedError, RpcError, RpcTransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP statuses that say "this endpoint, right now" rather than "your request"
RETRYABLE_HTTP_STATUSES = {401, 403, 408, 429, 500, 502, 503, 504}

# JSON-RPC error codes reported by unhealthy or lagging nodes
RETRYABLE_RPC_CODES = {
    -32603,  # internal error
    -32005,  # node is behind
    -32004,  # block not available
    -32014,  # block status not yet available
    -32016,  # minimum context slot not reached
}


def redact_endpoint(endpoint: str) -> str:
    """Strip query strings (API keys) from an endpoint URL before logging it."""
    parts = urlsplit(endpoint)
    return f"{parts.scheme}://{parts.netloc}{parts.path}"


class EndpointFailoverPool:
    """
    Ordered pool of equivalent RPC endpoints with sticky failover.

    The preferred index is shared by every caller in the process and updated
    last-writer-wins; any endpoint in the list is a valid substitute, so a
    lost update only costs one extra failed attempt.
    """

    def __init__(
        self,
        endpoints: Optional[List[str]] = None,
        retryable_exceptions: Tuple[type, ...] = (RpcTransportError,)
    ):
        """
        Initialize the pool.

        Args:
            endpoints: Ordered endpoint URLs. If None, uses config.
            retryable_exceptions: Errors that move the call to the next endpoint.
                Anything else propagates immediately.
        """
        self._endpoints = list(endpoints) if endpoints is not None else settings.rpc_endpoints()
        if not self._endpoints:
            raise ValueError("EndpointFailoverPool needs at least one endpoint")
        self._retryable = retryable_exceptions
        self._current_index = 0

    @property
    def endpoints(self) -> List[str]:
        return list(self._endpoints)

    @property
    def current_index(self) -> int:
        return self._current_index

    @property
    def current_endpoint(self) -> str:
        return self._endpoints[self._current_index]

    def execute(self, operation: Callable[[str], T]) -> T:
        """
        Run ``operation(endpoint_url)`` with failover.

        Returns:
            Whatever the operation returned on the first endpoint that succeeded

        Raises:
            EndpointPoolExhaustedError: If every endpoint failed with a retryable error
            Exception: Any non-retryable error raised by the operation
        """
        start = self._current_index
        size = len(self._endpoints)
        errors: List[Exception] = []

        for attempt in range(size):
            index = (start + attempt) % size
            endpoint = self._endpoints[index]
            try:
                result = operation(endpoint)
            except self._retryable as e:
                logger.warning(f"RPC endpoint {redact_endpoint(endpoint)} failed: {e}")
                errors.append(e)
                continue

            if index != self._current_index:
                logger.info(f"RPC failover: preferring {redact_endpoint(endpoint)}")
            self._current_index = index
            return result

        logger.error(f"All {size} RPC endpoints failed")
        raise EndpointPoolExhaustedError(errors)


class SignatureState(Enum):
    """Ledger view of a submitted transaction."""
    NOT_FOUND = "not_found"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class SignatureStatus:
    state: SignatureState
    error: Optional[str] = None
    confirmation_status: Optional[str] = None


class SolanaRpcClient:
    """Thin JSON-RPC client routed through an EndpointFailoverPool."""

    def __init__(
        self,
        pool: EndpointFailoverPool,
        timeout: Optional[float] = None,
        commitment: str = "confirmed"
    ):
        self.pool = pool
        self.commitment = commitment
        self._timeout = timeout

    @property
    def timeout(self) -> float:
        if self._timeout is not None:
            return self._timeout
        return settings.X402_RPC_TIMEOUT_SECONDS

    def _call(self, endpoint: str, method: str, params: List[Any]) -> Any:
        """
        Perform one JSON-RPC call against a single endpoint.

        Raises:
            RpcTransportError: Transport failure, bad HTTP status, malformed
                envelope or an unhealthy-node error code
            RpcError: The node's definitive error answer
        """
        try:
            response = requests.post(
                endpoint,
                json={
                    "jsonrpc": "2.0",
                    "id": 1,
                    "method": method,
                    "params": params,
                },
                timeout=self.timeout
            )
        except RequestException as e:
            raise RpcTransportError(f"{method} request failed: {e}")

        if response.status_code in RETRYABLE_HTTP_STATUSES or response.status_code >= 500:
            raise RpcTransportError(f"{method} returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise RpcError(f"{method} rejected with HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            raise RpcTransportError(f"{method} returned invalid JSON")

        if not isinstance(body, dict):
            raise RpcTransportError(f"Invalid RPC response for {method}: not an object")

        if "error" in body:
            error = body["error"] or {}
            code = error.get("code")
            message = error.get("message", "unknown error")
            if code in RETRYABLE_RPC_CODES:
                raise RpcTransportError(f"{method} node error {code}: {message}", rpc_code=code)
            raise RpcError(f"{method} error {code}: {message}", rpc_code=code,
                           context={"data": error.get("data")})

        if "result" not in body:
            raise RpcTransportError(f"Invalid RPC response for {method}: missing 'result' field")

        return body["result"]

    def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Call ``method`` through the failover pool."""
        return self.pool.execute(lambda endpoint: self._call(endpoint, method, params or []))

    def get_balance(self, address: str) -> int:
        """Native balance of ``address`` in lamports."""
        result = self.request("getBalance", [address, {"commitment": self.commitment}])
        return int(result["value"])

    def get_latest_blockhash(self) -> Dict[str, Any]:
        """Latest blockhash as ``{"blockhash": str, "lastValidBlockHeight": int}``."""
        result = self.request("getLatestBlockhash", [{"commitment": self.commitment}])
        return result["value"]

    def send_transaction(self, signed_transaction: bytes, skip_preflight: bool = False) -> str:
        """
        Submit a signed transaction and return its signature.

        The same signed bytes are re-sent on failover; the ledger deduplicates
        by signature, so a retry can never pay twice.
        """
        encoded = base64.b64encode(signed_transaction).decode("utf-8")
        return self.request(
            "sendTransaction",
            [
                encoded,
                {
                    "encoding": "base64",
                    "skipPreflight": skip_preflight,
                    "preflightCommitment": self.commitment,
                    "maxRetries": 3,
                },
            ]
        )

    def get_signature_status(self, signature: str) -> SignatureStatus:
        """Map getSignatureStatuses onto NOT_FOUND / PENDING / CONFIRMED / FAILED."""
        result = self.request(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}]
        )
        values = result.get("value") or [None]
        status = values[0]

        if status is None:
            return SignatureStatus(state=SignatureState.NOT_FOUND)

        confirmation = status.get("confirmationStatus")
        if status.get("err") is not None:
            return SignatureStatus(
                state=SignatureState.FAILED,
                error=json.dumps(status["err"]),
                confirmation_status=confirmation
            )

        if confirmation in ("confirmed", "finalized"):
            return SignatureStatus(state=SignatureState.CONFIRMED, confirmation_status=confirmation)

        return SignatureStatus(state=SignatureState.PENDING, confirmation_status=confirmation)

    def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """Fetch a transaction in jsonParsed form, or None if the ledger has not seen it."""
        return self.request(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ]
        )

    def get_account_data(self, address: str) -> Optional[bytes]:
        """Raw account data, or None if the account does not exist."""
        result = self.request("getAccountInfo", [address, {"encoding": "base64"}])
        value = result.get("value")
        if not value:
            return None
        data = value.get("data")
        if isinstance(data, list):
            data = data[0]
        return base64.b64decode(data)
