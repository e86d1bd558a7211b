"""
Signing interface adapters.

The keyring signer never holds a ledger network client. It asks a signing
relay (the host that owns the operator key and submits ScheduleSign
transactions) to append its signature, authenticating each request with
an Ed25519 signature from a KeyProvider.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from .errors import SigningError, TransientIOError
from .keys import KeyProvider, PublicKey
from .util import canonicalize, generate_id, utc_now_iso

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "SUCCESS"


@dataclass(frozen=True)
class SignReceipt:
    success: bool
    status: str
    transaction_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "transaction_id": self.transaction_id,
        }


class ScheduleSigner(ABC):
    """Appends the local signature to a scheduled transaction."""

    @abstractmethod
    def sign(self, schedule_id: str) -> SignReceipt:
        pass


class DryRunScheduleSigner(ScheduleSigner):
    """
    Records sign requests without touching the network.

    When given a ledger and public key, writes the signature back to the
    ledger so later reviews observe it.
    """

    def __init__(self, ledger=None, public_key: Optional[PublicKey] = None):
        self._ledger = ledger
        self._public_key = public_key
        self._lock = threading.Lock()
        self.requests: List[str] = []

    def sign(self, schedule_id: str) -> SignReceipt:
        with self._lock:
            self.requests.append(schedule_id)
        if self._ledger is not None and self._public_key is not None:
            self._ledger.add_signature(schedule_id, self._public_key)
        logger.info("Dry-run signature recorded for %s", schedule_id)
        return SignReceipt(success=True, status=STATUS_SUCCESS, transaction_id=f"dry-run-{generate_id()}")


class RelayScheduleSigner(ScheduleSigner):
    """
    POSTs signed sign-requests to a signing relay.

    Request body:
        {"schedule_id", "account_id", "requested_at", "request_id",
         "kid", "signature"}
    where signature is Ed25519 over the canonical JSON of the other fields.
    The relay answers {"status", "transaction_id"}.
    """

    def __init__(
        self,
        relay_url: str,
        key_provider: KeyProvider,
        account_id: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None
    ):
        if not relay_url:
            raise SigningError("SIGNING_RELAY_URL is required for the relay signer")
        self.relay_url = relay_url.rstrip("/")
        self.key_provider = key_provider
        self.account_id = account_id
        self.timeout = timeout
        self.session = session or requests.Session()

    def build_request(self, schedule_id: str) -> Dict[str, Any]:
        body = {
            "schedule_id": schedule_id,
            "account_id": self.account_id,
            "requested_at": utc_now_iso(),
            "request_id": generate_id(),
        }
        kid, signature = self.key_provider.sign(canonicalize(body))
        body["kid"] = kid
        body["signature"] = signature
        return body

    def sign(self, schedule_id: str) -> SignReceipt:
        url = f"{self.relay_url}/sign"
        try:
            r = self.session.post(url, json=self.build_request(schedule_id), timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientIOError(f"POST {url}: {e}") from e
        if r.status_code == 429 or r.status_code >= 500:
            raise TransientIOError(f"POST {url}: HTTP {r.status_code}")
        if r.status_code >= 400:
            raise SigningError(f"POST {url}: HTTP {r.status_code}")
        try:
            data = r.json()
        except ValueError as e:
            raise SigningError(f"POST {url}: response is not JSON") from e
        status = str(data.get("status", "UNKNOWN"))
        return SignReceipt(
            success=status == STATUS_SUCCESS,
            status=status,
            transaction_id=data.get("transaction_id"),
        )


def get_schedule_signer(
    signer_type: str,
    relay_url: str = "",
    key_provider: Optional[KeyProvider] = None,
    account_id: str = "",
    timeout: float = 10.0,
    ledger=None,
    public_key: Optional[PublicKey] = None
) -> ScheduleSigner:
    """
    Factory function to get the appropriate schedule signer.

    Args:
        signer_type: "dry_run" or "relay"
    """
    if signer_type == "relay":
        if key_provider is None:
            raise SigningError("relay signer needs a key provider")
        return RelayScheduleSigner(relay_url, key_provider, account_id, timeout=timeout)
    if signer_type == "dry_run":
        return DryRunScheduleSigner(ledger=ledger, public_key=public_key)
    raise SigningError(f"Unknown signer type: {signer_type}")
