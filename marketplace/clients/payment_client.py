"""
Payment processor REST client (Stripe-compatible API).

Only the calls the settlement core needs: refunds on cancellation,
transfers to vendor accounts on completion, and connected-account status.
Every mutating call carries an idempotency key so a retried task can never
move money twice.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from marketplace.config import Settings

logger = logging.getLogger(__name__)


class PaymentProcessorError(Exception):
    """Exception raised when a payment processor request fails"""
    def __init__(self, message: str, status_code: Optional[int] = None, response_body: Optional[dict] = None):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(self.message)


@dataclass
class RefundResult:
    refund_id: str
    amount_cents: int
    status: str


@dataclass
class TransferResult:
    transfer_id: str
    amount_cents: int
    destination: str


@dataclass
class AccountStatus:
    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool

    @property
    def payments_enabled(self) -> bool:
        return self.charges_enabled and self.payouts_enabled


class PaymentProcessorClient:
    """
    Client for the payment processor.

    Usage:
        async with httpx.AsyncClient() as http:
            client = PaymentProcessorClient(http, settings)
            await client.create_refund("pi_123", 810, idempotency_key="refund-item_abc")
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: Settings,
        logger_instance: logging.Logger = logger
    ):
        """
        Args:
            http_client: httpx AsyncClient for making HTTP requests
            settings: Application settings containing the API key and base URL
            logger_instance: Logger for tracking API calls
        """
        self._http_client = http_client
        self._settings = settings
        self._logger = logger_instance
        self._api_base_url = settings.payment_api_base_url.rstrip("/")

    async def create_refund(
        self,
        payment_reference: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> RefundResult:
        """
        Refund part or all of a captured payment.

        Raises:
            ValueError: If amount_cents is not positive
            PaymentProcessorError: If the request fails
        """
        if amount_cents <= 0:
            raise ValueError(f"Refund amount must be positive, got {amount_cents}")

        data = {"payment_intent": payment_reference, "amount": str(amount_cents)}
        data.update(self._metadata_fields(metadata))
        body = await self._request("POST", "/refunds", data=data, idempotency_key=idempotency_key)

        self._logger.info(f"💳 Refund {body.get('id')} for {amount_cents} on {payment_reference}")
        return RefundResult(
            refund_id=body["id"],
            amount_cents=body.get("amount", amount_cents),
            status=body.get("status", "pending"),
        )

    async def create_transfer(
        self,
        destination_account: str,
        amount_cents: int,
        idempotency_key: str,
        transfer_group: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> TransferResult:
        """
        Transfer funds to a vendor's connected account.

        Raises:
            ValueError: If amount_cents is not positive
            PaymentProcessorError: If the request fails
        """
        if amount_cents <= 0:
            raise ValueError(f"Transfer amount must be positive, got {amount_cents}")

        data = {
            "amount": str(amount_cents),
            "currency": "usd",
            "destination": destination_account,
        }
        if transfer_group:
            data["transfer_group"] = transfer_group
        data.update(self._metadata_fields(metadata))
        body = await self._request("POST", "/transfers", data=data, idempotency_key=idempotency_key)

        self._logger.info(f"💸 Transfer {body.get('id')} of {amount_cents} to {destination_account}")
        return TransferResult(
            transfer_id=body["id"],
            amount_cents=body.get("amount", amount_cents),
            destination=destination_account,
        )

    async def retrieve_account(self, account_id: str) -> AccountStatus:
        body = await self._request("GET", f"/accounts/{account_id}")
        return AccountStatus(
            account_id=body.get("id", account_id),
            charges_enabled=bool(body.get("charges_enabled")),
            payouts_enabled=bool(body.get("payouts_enabled")),
            details_submitted=bool(body.get("details_submitted")),
        )

    @staticmethod
    def _metadata_fields(metadata: Optional[Dict[str, str]]) -> Dict[str, str]:
        # Form-encoded nested keys: metadata[order_id]=...
        return {f"metadata[{key}]": str(value) for key, value in (metadata or {}).items()}

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None
    ) -> dict:
        headers = {"Authorization": f"Bearer {self._settings.payment_api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        url = f"{self._api_base_url}{path}"
        try:
            response = await self._http_client.request(
                method,
                url,
                data=data,
                headers=headers,
                timeout=self._settings.payment_api_timeout
            )
        except httpx.TimeoutException as e:
            self._logger.error(f"❌ Payment processor timeout on {method} {path}: {e}")
            raise PaymentProcessorError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            self._logger.error(f"❌ Payment processor request error on {method} {path}: {e}")
            raise PaymentProcessorError(f"Request error: {e}") from e

        if response.status_code >= 400:
            error_data = response.json() if response.text else {}
            error_message = error_data.get("error", {}).get("message", "Unknown error")
            self._logger.error(
                f"❌ Payment processor error - status: {response.status_code}, "
                f"path: {path}, message: {error_message}"
            )
            raise PaymentProcessorError(
                message=f"Payment processor error: {error_message}",
                status_code=response.status_code,
                response_body=error_data
            )

        return response.json()
