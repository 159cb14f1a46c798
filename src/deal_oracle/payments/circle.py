"""
Custodial Wallet Payment Client

PaymentCollaborator backed by Circle's developer-controlled wallets REST API.

Every write request must carry a freshly encrypted copy of the entity secret:
RSA-OAEP(SHA-256) over the raw secret bytes with the entity public key served
by the API, base64 encoded. OAEP is randomized, so each request gets a unique
ciphertext as the API requires.
"""

import base64
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional
import httpx
import structlog

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from ..core.errors import PaymentCollaboratorError
from .collaborator import PaymentCollaborator, TokenBalance, TransferInfo

logger = structlog.get_logger()


class CircleWalletClient(PaymentCollaborator):
    """
    Thin client for the wallet endpoints the oracle needs.

    Args:
        api_key: Circle API key (Bearer token)
        entity_secret: 32-byte entity secret, hex encoded
        base_url: API root
        fee_level: LOW, MEDIUM or HIGH
        client: Optional preconfigured httpx.Client (tests inject a MockTransport)
    """

    def __init__(
        self,
        api_key: str,
        entity_secret: str,
        base_url: str = "https://api.circle.com",
        fee_level: str = "MEDIUM",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.entity_secret = entity_secret
        self.base_url = base_url.rstrip("/")
        self.fee_level = fee_level
        self._client = client or httpx.Client(timeout=timeout)
        self._public_key = None

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._client.request(method, url, headers=self._headers(), json=body)
        except httpx.HTTPError as e:
            logger.error("wallet_request_failed", method=method, path=path, error=str(e))
            raise PaymentCollaboratorError(f"{method} {path} failed: {e}")

        if response.is_error:
            detail = ""
            try:
                detail = str(response.json().get("message", ""))
            except (ValueError, AttributeError):
                detail = response.text[:120]
            logger.error(
                "wallet_request_rejected",
                method=method,
                path=path,
                status_code=response.status_code,
                detail=detail,
            )
            raise PaymentCollaboratorError(
                f"{method} {path} returned HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError:
            raise PaymentCollaboratorError(f"{method} {path} returned a non-JSON body")
        if not isinstance(payload, dict):
            raise PaymentCollaboratorError(f"{method} {path} returned an unexpected body")
        return payload.get("data") or {}

    def _entity_public_key(self):
        if self._public_key is None:
            data = self._request("GET", "/v1/w3s/config/entity/publicKey")
            pem = data.get("publicKey")
            if not pem:
                raise PaymentCollaboratorError("Entity public key missing from response")
            self._public_key = serialization.load_pem_public_key(pem.encode("utf-8"))
        return self._public_key

    def entity_secret_ciphertext(self) -> str:
        """Encrypt the entity secret for a single request."""
        try:
            secret = bytes.fromhex(self.entity_secret)
        except ValueError:
            raise PaymentCollaboratorError("Entity secret must be hex encoded")

        ciphertext = self._entity_public_key().encrypt(
            secret,
            padding.OAEP(
                mgf=padding.MGF1(algorithm=hashes.SHA256()),
                algorithm=hashes.SHA256(),
                label=None,
            ),
        )
        return base64.b64encode(ciphertext).decode("utf-8")

    def query_balances(self, wallet_ref: str) -> List[TokenBalance]:
        data = self._request("GET", f"/v1/w3s/wallets/{wallet_ref}/balances")
        balances = []
        for entry in data.get("tokenBalances") or []:
            token = entry.get("token") or {}
            balances.append(TokenBalance(
                symbol=str(token.get("symbol") or ""),
                amount=str(entry.get("amount") or "0"),
                is_native=bool(token.get("isNative", False)),
                asset_ref=str(token.get("id") or ""),
                asset_address=token.get("tokenAddress"),
            ))
        return balances

    def submit_transfer(
        self,
        wallet_ref: str,
        destination_address: str,
        asset_ref: str,
        amount: Decimal,
        idempotency_key: Optional[str] = None,
    ) -> str:
        body = {
            "idempotencyKey": idempotency_key or str(uuid.uuid4()),
            "entitySecretCiphertext": self.entity_secret_ciphertext(),
            "walletId": wallet_ref,
            "tokenId": asset_ref,
            "destinationAddress": destination_address,
            "amounts": [str(amount)],
            "feeLevel": self.fee_level,
        }
        data = self._request("POST", "/v1/w3s/developer/transactions/transfer", body)
        transfer_ref = data.get("id")
        if not transfer_ref:
            raise PaymentCollaboratorError("Transfer response did not include an id")

        logger.info(
            "wallet_transfer_submitted",
            transfer_ref=transfer_ref,
            state=data.get("state"),
            destination=destination_address,
        )
        return str(transfer_ref)

    def get_transfer(self, transfer_ref: str) -> TransferInfo:
        data = self._request("GET", f"/v1/w3s/transactions/{transfer_ref}")
        tx = data.get("transaction") or data
        return TransferInfo(
            transfer_ref=transfer_ref,
            state=tx.get("state"),
            chain_tx_hash=tx.get("txHash"),
            chain=tx.get("blockchain"),
        )

    def close(self) -> None:
        self._client.close()
