# booking_engine/infrastructure/payments/sslcommerz_gateway.py

import logging
import time

import httpx

from booking_engine.domain.exceptions import PaymentProviderError


logger = logging.getLogger(__name__)

PROVIDER = "sslcommerz"
INIT_PATH = "/gwprocess/v4/api.php"
VALIDATION_PATH = "/validator/api/validationserverAPI.php"


class SSLCommerzGateway:
    """
    Hosted-checkout session creation for SSLCommerz.
    The customer is redirected to GatewayPageURL and comes back through
    the success/fail/cancel callbacks with `tran_id`, `amount` and, on
    success, a `val_id` that must be checked with `validate_transaction`.
    """

    def __init__(
        self,
        store_id: str | None,
        store_password: str | None,
        base_url: str,
        callback_base_url: str,
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        backoff_seconds: float = 0.5,
        transport: httpx.BaseTransport | None = None,
    ):
        self.store_id = store_id
        self.store_password = store_password
        self.base_url = base_url.rstrip("/")
        self.callback_base_url = callback_base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._transport = transport

    def payment_init(self, payload: dict) -> dict:
        """
        payload keys: amount (major units), currency, transaction_id, name,
        email, phone_number, address, product_name.
        """
        self._require_credentials()

        form = {
            "store_id": self.store_id,
            "store_passwd": self.store_password,
            "total_amount": payload["amount"],
            "currency": payload.get("currency", "BDT").upper(),
            "tran_id": payload["transaction_id"],
            "success_url": f"{self.callback_base_url}/success",
            "fail_url": f"{self.callback_base_url}/fail",
            "cancel_url": f"{self.callback_base_url}/cancel",
            "cus_name": payload.get("name") or "N/A",
            "cus_email": payload.get("email") or "N/A",
            "cus_phone": payload.get("phone_number") or "N/A",
            "cus_add1": payload.get("address") or "N/A",
            "cus_city": "N/A",
            "cus_country": "Bangladesh",
            "shipping_method": "N/A",
            "num_of_item": 1,
            "product_name": payload.get("product_name") or "Event booking",
            "product_category": "Event",
            "product_profile": "general",
        }

        response = self._request_with_retry("POST", f"{self.base_url}{INIT_PATH}", data=form)
        body = self._json(response)

        if body.get("status") != "SUCCESS" or not body.get("GatewayPageURL"):
            reason = body.get("failedreason") or "Gateway rejected the session"
            raise PaymentProviderError(PROVIDER, reason)
        return body

    def validate_transaction(self, val_id: str) -> dict:
        """
        Looks up the gateway's record for a success callback. Returns the
        raw validation body; its `status` is VALID or VALIDATED only for
        a genuine, captured payment.
        """
        self._require_credentials()

        params = {
            "val_id": val_id,
            "store_id": self.store_id,
            "store_passwd": self.store_password,
            "format": "json",
        }
        response = self._request_with_retry("GET", f"{self.base_url}{VALIDATION_PATH}", params=params)
        return self._json(response)

    def _require_credentials(self) -> None:
        if not self.store_id or not self.store_password:
            raise PaymentProviderError(
                PROVIDER,
                "SSLCommerz credentials not configured. Set SSLCOMMERZ_STORE_ID and SSLCOMMERZ_STORE_PASSWORD.",
            )

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            body = response.json()
        except ValueError as exc:
            raise PaymentProviderError(PROVIDER, "Gateway returned a non-JSON response") from exc
        if not isinstance(body, dict):
            raise PaymentProviderError(PROVIDER, "Gateway returned an unexpected response")
        return body

    def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        attempt = 0
        while True:
            try:
                with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                    response = client.request(method, url, **kwargs)
                response.raise_for_status()
                return response
            except httpx.HTTPStatusError as exc:
                # Only 5xx is transient.
                if exc.response.status_code < 500 or attempt >= self.max_retries:
                    raise PaymentProviderError(PROVIDER, str(exc)) from exc
                error = exc
            except httpx.TransportError as exc:
                if attempt >= self.max_retries:
                    raise PaymentProviderError(PROVIDER, str(exc)) from exc
                error = exc

            delay = self.backoff_seconds * (2 ** attempt)
            attempt += 1
            logger.warning(
                "SSLCommerz call failed (attempt %s/%s): %s. Retrying in %.1f seconds...",
                attempt,
                self.max_retries + 1,
                error,
                delay,
            )
            time.sleep(delay)
