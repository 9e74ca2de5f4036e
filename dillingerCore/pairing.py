"""
Moonlight pairing through the streaming sidecar.

The sidecar owns the actual pairing; this module validates PINs locally,
forwards attempts, and keeps a per-secret record so a secret can be accepted
at most once.
"""

import asyncio
import logging
import re
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx

from .database import Database
from .exceptions import PairingError
from .models import (
    ClearResult,
    PairedClient,
    PairingOutcome,
    PairingRequest,
    PairingResult,
    PairingStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

PAIRING_KIND = "pairing"
PAIRED_CLIENTS_KIND = "paired_clients"
PIN_PATTERN = re.compile(r"[0-9]{4}")


class SidecarClient:
    """HTTP client for the streaming sidecar's pairing endpoints"""

    def __init__(
        self,
        base_url: str = "http://localhost:9999",
        timeout: float = 1.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.session: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    def _client(self) -> httpx.AsyncClient:
        if self.session is None:
            self.session = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self.transport,
            )
        return self.session

    async def aclose(self):
        if self.session:
            await self.session.aclose()
            self.session = None

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client().request(method, path, **kwargs)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise PairingError(f"{method} {path}: {e.__class__.__name__}: {e}") from e
        except ValueError as e:
            raise PairingError(f"{method} {path}: invalid JSON response") from e
        if not isinstance(data, dict):
            raise PairingError(f"{method} {path}: unexpected response shape")
        return data

    async def status(self) -> Dict[str, Any]:
        return await self._request("GET", "/status")

    async def pair(self, pair_secret: str, pin: str) -> Dict[str, Any]:
        return await self._request("POST", "/pair", json={"pair_secret": pair_secret, "pin": pin})

    async def unpair_all(self) -> Dict[str, Any]:
        return await self._request("POST", "/unpair-all")


def _pending_requests(data: Dict[str, Any]):
    for entry in data.get("pending") or []:
        if isinstance(entry, dict) and entry.get("pair_secret"):
            yield PairingRequest(pair_secret=str(entry["pair_secret"]), client_ip=entry.get("client_ip"))


def _paired_clients(data: Dict[str, Any]):
    for entry in data.get("paired") or []:
        if isinstance(entry, dict) and entry.get("client_id") is not None:
            yield PairedClient(id=str(entry["client_id"]), name=entry.get("app_state_folder"))


class PairingCoordinator:
    def __init__(
        self,
        database: Database,
        sidecar: SidecarClient,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.sidecar = sidecar
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def status(self) -> PairingStatus:
        """Sidecar readiness plus pending requests and paired clients"""
        try:
            data = await self.sidecar.status()
        except PairingError as e:
            logger.warning(f"Streaming sidecar not reachable: {e}")
            return PairingStatus(sidecar_reachable=False, ready=False, error=str(e))
        return PairingStatus(
            sidecar_reachable=True,
            ready=True,
            pending=list(_pending_requests(data)),
            paired=list(_paired_clients(data)),
        )

    async def pair(self, pair_secret: Optional[str], pin: str) -> PairingResult:
        """Submit a PIN for a pending request.

        Without a secret, the oldest request the sidecar reports is used.
        """
        if not isinstance(pin, str) or not PIN_PATTERN.fullmatch(pin):
            return self._rejected(pair_secret, "PIN must be exactly 4 digits")

        if not pair_secret:
            status = await self.status()
            if not status.pending:
                return self._rejected(
                    None, "No pending pairing request found. Trigger pairing in Moonlight first."
                )
            pair_secret = status.pending[0].pair_secret

        async with self._locks[pair_secret]:
            record = await self._load(pair_secret)
            if record is not None and record.outcome == PairingOutcome.ACCEPTED:
                return self._rejected(pair_secret, "Pairing secret already used")
            record = record or PairingRequest(pair_secret=pair_secret)
            record.attempts += 1
            logger.info(f"Pairing attempt {record.attempts} for secret {pair_secret}")

            try:
                pending = {p.pair_secret: p for p in _pending_requests(await self.sidecar.status())}
                if pair_secret not in pending:
                    record.outcome = PairingOutcome.REJECTED
                    await self._save(record)
                    return self._rejected(pair_secret, "Unknown or expired pairing secret")
                record.client_ip = pending[pair_secret].client_ip or record.client_ip
                response = await self.sidecar.pair(pair_secret, pin)
            except PairingError as e:
                logger.error(f"Pairing for {pair_secret} failed: {e}")
                await self._save(record)
                return self._rejected(pair_secret, f"Streaming sidecar unavailable: {e}")

            if response.get("success"):
                record.outcome = PairingOutcome.ACCEPTED
                await self._save(record)
                client = PairedClient(id=pair_secret, client_ip=record.client_ip, paired_at=self.clock())
                await self.database.write_entity(
                    PAIRED_CLIENTS_KIND, client.id, client.model_dump(mode="json")
                )
                logger.info(f"Pairing accepted for {pair_secret}")
                return PairingResult(
                    success=True,
                    outcome=PairingOutcome.ACCEPTED,
                    message="Pairing successful!",
                    pair_secret=pair_secret,
                )

            record.outcome = PairingOutcome.REJECTED
            await self._save(record)
            return self._rejected(pair_secret, response.get("message") or "Pairing failed")

    async def clear(self) -> ClearResult:
        """Unpair every client. Failure is reported, never raised"""
        try:
            response = await self.sidecar.unpair_all()
        except PairingError as e:
            logger.warning(f"Unpair-all not available: {e}")
            return ClearResult(
                success=False,
                message="Clearing paired clients is not supported by the streaming sidecar.",
            )
        if not response.get("success", True):
            return ClearResult(success=False, message=response.get("message") or "Unpair failed")

        for client in await self.database.list_entities(PAIRED_CLIENTS_KIND):
            await self.database.delete_entity(PAIRED_CLIENTS_KIND, client["id"])
        logger.info("Cleared all paired clients")
        return ClearResult(success=True, message="All paired clients removed")

    async def _load(self, pair_secret: str) -> Optional[PairingRequest]:
        data = await self.database.read_entity(PAIRING_KIND, pair_secret)
        return PairingRequest.model_validate(data) if data else None

    async def _save(self, record: PairingRequest):
        record.updated_at = self.clock()
        await self.database.write_entity(PAIRING_KIND, record.pair_secret, record.model_dump(mode="json"))

    @staticmethod
    def _rejected(pair_secret: Optional[str], message: str) -> PairingResult:
        return PairingResult(
            success=False,
            outcome=PairingOutcome.REJECTED,
            message=message,
            pair_secret=pair_secret,
        )
