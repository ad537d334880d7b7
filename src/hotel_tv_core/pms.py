"""HTTP client for the external Property Management System."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

from .db import format_ts, parse_ts
from .logging import get_logger
from .metrics import record_pms_fetch
from .store import BillRecord, GuestRecord, SettingsRow

CONNECTION_REFUSED = "connection_refused"
AUTHENTICATION_FAILED = "authentication_failed"
FORBIDDEN = "forbidden"
SERVER_ERROR = "server_error"
TIMEOUT = "timeout"
REQUEST_FAILED = "request_failed"

ERROR_MESSAGES: Dict[str, str] = {
    CONNECTION_REFUSED: "Connection refused - server unreachable",
    AUTHENTICATION_FAILED: "Authentication failed - invalid credentials",
    FORBIDDEN: "Access forbidden - insufficient permissions",
    SERVER_ERROR: "Server error - PMS system unavailable",
    TIMEOUT: "Connection timeout - server not responding",
    REQUEST_FAILED: "Connection failed",
}

HOTELS_PATH = "/api/v1/hotels"
DEFAULT_SERVER_INFO = "Opera Cloud PMS"


class PmsError(Exception):
    """A classified PMS connectivity or protocol fault."""

    def __init__(
        self,
        category: str,
        message: Optional[str] = None,
        *,
        details: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.category = category
        self.message = message or ERROR_MESSAGES.get(category, ERROR_MESSAGES[REQUEST_FAILED])
        self.details = details
        self.status_code = status_code
        super().__init__(self.message)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "error": self.message,
            "details": self.details,
        }


def classify_error(exc: BaseException) -> PmsError:
    """Map a transport or HTTP failure onto the fixed PMS error taxonomy."""

    if isinstance(exc, PmsError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        if status_code == 401:
            category = AUTHENTICATION_FAILED
        elif status_code == 403:
            category = FORBIDDEN
        elif status_code >= 500:
            category = SERVER_ERROR
        else:
            category = REQUEST_FAILED
        return PmsError(category, details=str(exc), status_code=status_code)
    if isinstance(exc, httpx.TimeoutException):
        return PmsError(TIMEOUT, details=str(exc))
    if isinstance(exc, httpx.ConnectError):
        return PmsError(CONNECTION_REFUSED, details=str(exc))
    return PmsError(REQUEST_FAILED, details=str(exc))


@dataclass(frozen=True)
class PmsCredentials:
    """Connection material for a single PMS endpoint."""

    base_url: str
    api_key: str
    username: Optional[str] = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "PmsCredentials":
        base_url = str(payload.get("base_url") or "").strip()
        api_key = str(payload.get("api_key") or "").strip()
        if not base_url or not api_key:
            raise ValueError("base_url and api_key are required")
        username = payload.get("username")
        return cls(base_url=base_url, api_key=api_key, username=username or None)


@dataclass(frozen=True)
class PmsSettings:
    """Immutable snapshot of the stored PMS configuration."""

    base_url: str
    api_key: str
    username: str
    password_hash: str = field(repr=False)

    @classmethod
    def from_row(cls, row: SettingsRow) -> Optional["PmsSettings"]:
        """Build a snapshot, or ``None`` when any required field is blank."""

        values = {
            "base_url": row.pms_base_url,
            "api_key": row.pms_api_key,
            "username": row.pms_username,
            "password_hash": row.pms_password_hash,
        }
        if any(value is None or not str(value).strip() for value in values.values()):
            return None
        return cls(**{key: str(value).strip() for key, value in values.items()})

    def credentials(self) -> PmsCredentials:
        return PmsCredentials(base_url=self.base_url, api_key=self.api_key, username=self.username)


@dataclass(frozen=True)
class RoomSnapshot:
    """Guest and folio state for one room as reported by the PMS."""

    room_number: str
    guest: Optional[GuestRecord]
    bills: Tuple[BillRecord, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "room_number": self.room_number,
            "guest": (
                {
                    "guest_name": self.guest.guest_name,
                    "check_in": self.guest.check_in,
                    "check_out": self.guest.check_out,
                }
                if self.guest
                else None
            ),
            "bills": [
                {"label": bill.label, "amount": bill.amount, "bill_date": bill.bill_date}
                for bill in self.bills
            ],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RoomSnapshot":
        guest = payload.get("guest")
        return cls(
            room_number=str(payload["room_number"]),
            guest=(
                GuestRecord(
                    guest_name=guest["guest_name"],
                    check_in=guest.get("check_in"),
                    check_out=guest.get("check_out"),
                )
                if guest
                else None
            ),
            bills=tuple(
                BillRecord(
                    label=bill["label"],
                    amount=float(bill["amount"]),
                    bill_date=bill.get("bill_date"),
                )
                for bill in payload.get("bills") or ()
            ),
        )


def _normalize_timestamp(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    try:
        parsed = parse_ts(str(value))
    except ValueError as exc:
        raise PmsError(REQUEST_FAILED, f"Malformed PMS timestamp: {value!r}") from exc
    return format_ts(parsed) if parsed else None


def _parse_guest(payload: Any) -> Optional[GuestRecord]:
    if not isinstance(payload, Mapping):
        return None
    name = str(payload.get("guest_name") or "").strip()
    if not name:
        return None
    return GuestRecord(
        guest_name=name,
        check_in=_normalize_timestamp(payload.get("check_in")),
        check_out=_normalize_timestamp(payload.get("check_out")),
    )


def _parse_charges(payload: Any) -> Tuple[BillRecord, ...]:
    if not isinstance(payload, Mapping):
        return ()
    charges = payload.get("charges") or []
    if not isinstance(charges, list):
        raise PmsError(REQUEST_FAILED, f"Malformed folio charges: {type(charges).__name__}")
    bills = []
    for charge in charges:
        if not isinstance(charge, Mapping):
            continue
        label = charge.get("description") or charge.get("item_name") or "Charge"
        try:
            amount = float(charge.get("amount") or 0)
        except (TypeError, ValueError) as exc:
            raise PmsError(REQUEST_FAILED, f"Malformed charge amount: {charge.get('amount')!r}") from exc
        bills.append(
            BillRecord(
                label=str(label),
                amount=amount,
                bill_date=_normalize_timestamp(charge.get("post_date") or charge.get("created_at")),
            )
        )
    return tuple(bills)


class PmsClient:
    """Async client bound to one set of PMS credentials."""

    def __init__(
        self,
        credentials: PmsCredentials,
        *,
        timeout: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.credentials = credentials
        self.logger = get_logger("hoteltv.pms.client")
        self._client = httpx.AsyncClient(
            base_url=credentials.base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "Authorization": f"Bearer {credentials.api_key}",
            },
        )

    async def __aenter__(self) -> "PmsClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str) -> Optional[Any]:
        """GET a JSON document; ``None`` for 404, ``PmsError`` for any other fault."""

        self.logger.debug("PMS request", extra={"path": path})
        try:
            response = await self._client.get(path)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            error = classify_error(exc)
            self.logger.warning(
                "PMS request failed",
                extra={"path": path, "category": error.category, "details": error.details},
            )
            raise error from exc

    async def fetch_room(self, room_number: str) -> RoomSnapshot:
        """Fetch guest and folio data for a room.

        A missing guest (404 or blank name) is a normal outcome and yields an
        empty snapshot without querying the folio.
        """

        try:
            guest = _parse_guest(await self._get(f"/api/v1/rooms/{room_number}/guest"))
            if guest is None:
                record_pms_fetch("vacant")
                return RoomSnapshot(room_number=room_number, guest=None)
            bills = _parse_charges(await self._get(f"/api/v1/rooms/{room_number}/folio"))
        except PmsError as exc:
            record_pms_fetch(exc.category)
            raise
        record_pms_fetch("occupied")
        return RoomSnapshot(room_number=room_number, guest=guest, bills=bills)

    async def server_info(self) -> Dict[str, Any]:
        """Hit the hotels listing to verify reachability and credentials."""

        start = time.perf_counter()
        try:
            response = await self._client.get(HOTELS_PATH)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise classify_error(exc) from exc
        try:
            data = response.json()
        except ValueError:
            data = None
        server_info = data.get("server_info") if isinstance(data, Mapping) else None
        return {
            "status": response.status_code,
            "responseTime": response.headers.get("x-response-time", "N/A"),
            "serverInfo": server_info or DEFAULT_SERVER_INFO,
            "elapsed_ms": round((time.perf_counter() - start) * 1000, 2),
        }
