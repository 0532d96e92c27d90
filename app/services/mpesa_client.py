# FILE: app/services/mpesa_client.py
from __future__ import annotations

import base64
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import requests

from app.core.config import Settings, settings as default_settings
from app.core.errors import GatewayError
from app.services.mpesa_token import AccessTokenCache

logger = logging.getLogger(__name__)

OAUTH_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"
C2B_REGISTER_PATH = "/mpesa/c2b/v1/registerurl"

# Daraja answers a status query with this while the payer has not acted yet
STK_QUERY_IN_PROGRESS = "500.001.1001"


def mpesa_timestamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def mpesa_password(shortcode: str, passkey: str, timestamp: str) -> str:
    raw = f"{shortcode}{passkey}{timestamp}"
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def _json(resp: requests.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {"raw": (resp.text or "")[:500]}
    return data if isinstance(data, dict) else {"data": data}


class MpesaClient:
    """
    Thin Daraja API wrapper. One instance per application; it owns the
    HTTP session and the access-token cache.
    """

    def __init__(
        self,
        cfg: Optional[Settings] = None,
        *,
        session: Optional[requests.Session] = None,
        token_cache: Optional[AccessTokenCache] = None,
    ) -> None:
        self.cfg = cfg or default_settings
        self.http = session or requests.Session()
        self.timeout = float(self.cfg.MPESA_TIMEOUT_SECONDS)
        self.tokens = token_cache or AccessTokenCache(
            self.fetch_access_token,
            safety_margin=self.cfg.MPESA_TOKEN_SAFETY_MARGIN_SECONDS,
        )

    @property
    def base_url(self) -> str:
        return self.cfg.MPESA_BASE_URL

    def callback_url(self, name: str) -> str:
        return f"{self.cfg.MPESA_CALLBACK_URL.rstrip('/')}/{name}"

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------
    def fetch_access_token(self) -> Tuple[str, int]:
        url = f"{self.base_url}{OAUTH_PATH}"
        try:
            resp = self.http.get(
                url,
                auth=(self.cfg.MPESA_CONSUMER_KEY,
                      self.cfg.MPESA_CONSUMER_SECRET),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("M-Pesa OAuth request failed: %s", e)
            raise GatewayError("Failed to authenticate with M-Pesa",
                               retryable=True) from e

        data = _json(resp)
        token = data.get("access_token")
        if resp.status_code != 200 or not token:
            logger.error("M-Pesa OAuth rejected (%s): %s", resp.status_code,
                         data)
            raise GatewayError(
                "Failed to authenticate with M-Pesa",
                retryable=resp.status_code >= 500,
                gateway_code=str(resp.status_code),
                details=data,
            )
        return token, int(data.get("expires_in") or 3599)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _post(self,
              path: str,
              payload: Dict[str, Any],
              *,
              retry_auth: bool = True) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.tokens.get_token()}",
            "Content-Type": "application/json",
        }
        try:
            resp = self.http.post(url,
                                  json=payload,
                                  headers=headers,
                                  timeout=self.timeout)
        except requests.Timeout as e:
            logger.error("M-Pesa %s timed out after %ss", path, self.timeout)
            raise GatewayError("M-Pesa request timed out",
                               retryable=True) from e
        except requests.RequestException as e:
            logger.error("M-Pesa %s transport error: %s", path, e)
            raise GatewayError("Could not reach M-Pesa",
                               retryable=True) from e

        if resp.status_code == 401 and retry_auth:
            logger.warning("M-Pesa token rejected on %s, refreshing once",
                           path)
            self.tokens.invalidate()
            return self._post(path, payload, retry_auth=False)

        data = _json(resp)
        if resp.status_code >= 400:
            logger.error("M-Pesa %s failed (%s): %s", path, resp.status_code,
                         data)
            raise GatewayError(
                data.get("errorMessage") or f"M-Pesa error {resp.status_code}",
                retryable=resp.status_code >= 500,
                gateway_code=data.get("errorCode") or str(resp.status_code),
                details=data,
            )
        return data

    # ------------------------------------------------------------------
    # API calls
    # ------------------------------------------------------------------
    def stk_push(
        self,
        *,
        phone: str,
        amount: int,
        account_reference: str,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send the payment prompt. `phone` must already be 2547XXXXXXXX."""
        ts = mpesa_timestamp()
        shortcode = self.cfg.MPESA_SHORTCODE
        payload = {
            "BusinessShortCode": shortcode,
            "Password": mpesa_password(shortcode, self.cfg.MPESA_PASSKEY, ts),
            "Timestamp": ts,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": phone,
            "PartyB": shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.callback_url("push-callback"),
            "AccountReference": account_reference,
            "TransactionDesc": description or "Hospital Payment",
        }
        data = self._post(STK_PUSH_PATH, payload)

        if str(data.get("ResponseCode")) != "0":
            raise GatewayError(
                data.get("errorMessage") or data.get("ResponseDescription") or
                "STK push rejected",
                gateway_code=str(data.get("ResponseCode") or ""),
                details=data,
            )
        logger.info("STK push accepted: %s (%s)", data.get("CheckoutRequestID"),
                    data.get("CustomerMessage"))
        return data

    def stk_query(self, checkout_request_id: str) -> Dict[str, Any]:
        ts = mpesa_timestamp()
        shortcode = self.cfg.MPESA_SHORTCODE
        payload = {
            "BusinessShortCode": shortcode,
            "Password": mpesa_password(shortcode, self.cfg.MPESA_PASSKEY, ts),
            "Timestamp": ts,
            "CheckoutRequestID": checkout_request_id,
        }
        return self._post(STK_QUERY_PATH, payload)

    def register_c2b_urls(
        self,
        *,
        confirmation_url: Optional[str] = None,
        validation_url: Optional[str] = None,
        response_type: str = "Completed",
    ) -> Dict[str, Any]:
        payload = {
            "ShortCode": self.cfg.MPESA_SHORTCODE,
            "ResponseType": response_type,
            "ConfirmationURL": confirmation_url or
            self.callback_url("deposit-confirmation"),
            "ValidationURL": validation_url or
            self.callback_url("deposit-validation"),
        }
        data = self._post(C2B_REGISTER_PATH, payload)
        logger.info("C2B URLs registered for %s: %s", payload["ShortCode"],
                    data.get("ResponseDescription"))
        return data
