"""App Store Server Notifications v2: JWS signatures chained to Apple's root CA."""
from __future__ import annotations

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from jose import jws
from jose.exceptions import JOSEError

from ..gateways.notifications import VerifiedWebhook, WebhookRequest
from ..subscriptions.exceptions import AuthenticationFailure
from ..subscriptions.models import Gateway

logger = logging.getLogger(__name__)

ALLOWED_ALGORITHMS = ("ES256",)
# leaf, intermediate (Apple WWDR), root
MIN_CHAIN_LENGTH = 3


def load_root_certificate(path: str) -> x509.Certificate:
    """Load the pinned root from a PEM or DER file."""

    with open(path, "rb") as handle:
        data = handle.read()
    if b"-----BEGIN CERTIFICATE-----" in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def _fail(reason: str) -> AuthenticationFailure:
    return AuthenticationFailure(Gateway.APPLE.value, reason)


class AppleSignedPayloadVerifier:
    """Verify an App Store JWS against a pinned root certificate.

    The ``x5c`` header must carry the full chain. Each certificate must be
    issued by the next one and be valid at verification time, and the last one
    must be byte-identical to the pinned root. Only then is the leaf key
    trusted to check the signature.
    """

    def __init__(
        self,
        root_certificate: x509.Certificate,
        *,
        bundle_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._root_der = root_certificate.public_bytes(Encoding.DER)
        self.bundle_id = bundle_id
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _chain(self, header: Dict[str, Any]) -> List[x509.Certificate]:
        encoded = header.get("x5c")
        if not isinstance(encoded, list) or len(encoded) < MIN_CHAIN_LENGTH:
            raise _fail("x5c certificate chain is missing or incomplete")
        try:
            return [x509.load_der_x509_certificate(base64.b64decode(item, validate=True)) for item in encoded]
        except (binascii.Error, TypeError, ValueError) as exc:
            raise _fail("x5c certificate chain could not be decoded") from exc

    def _check_chain(self, chain: Sequence[x509.Certificate]) -> None:
        if chain[-1].public_bytes(Encoding.DER) != self._root_der:
            raise _fail("certificate chain does not end at the pinned root")

        now = self._clock()
        for certificate in chain:
            if not (certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc):
                raise _fail("certificate in chain is outside its validity period")

        for certificate, issuer in zip(chain, chain[1:]):
            try:
                certificate.verify_directly_issued_by(issuer)
            except (InvalidSignature, TypeError, ValueError) as exc:
                raise _fail("certificate chain link is not signed by its issuer") from exc

    def verify(self, token: str) -> Dict[str, Any]:
        """Return the decoded payload of ``token`` or raise :class:`AuthenticationFailure`."""

        if not isinstance(token, str) or not token:
            raise _fail("signed payload is missing")
        try:
            header = jws.get_unverified_header(token)
        except JOSEError as exc:
            raise _fail("signed payload header is malformed") from exc

        algorithm = header.get("alg")
        if algorithm not in ALLOWED_ALGORITHMS:
            raise _fail(f"algorithm {algorithm!r} is not allowed")

        chain = self._chain(header)
        self._check_chain(chain)

        leaf_key = chain[0].public_key().public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo)
        try:
            raw_payload = jws.verify(token, leaf_key.decode("ascii"), algorithms=[algorithm])
        except JOSEError as exc:
            raise _fail("signature verification failed") from exc

        try:
            payload = json.loads(raw_payload)
        except ValueError as exc:
            raise _fail("signed payload is not JSON") from exc
        if not isinstance(payload, dict):
            raise _fail("signed payload is not a JSON object")
        return payload


class AppleWebhookAuthenticator:
    """Authenticate a notification and the signed transaction data nested in it."""

    gateway = Gateway.APPLE

    def __init__(self, verifier: AppleSignedPayloadVerifier) -> None:
        self.verifier = verifier

    def authenticate(self, request: WebhookRequest) -> VerifiedWebhook:
        try:
            body = request.json()
        except ValueError as exc:
            raise _fail("body is not a JSON object") from exc

        payload = self.verifier.verify(body.get("signedPayload"))
        data = dict(payload.get("data") or {})

        expected_bundle = self.verifier.bundle_id
        if expected_bundle and data.get("bundleId") != expected_bundle:
            raise _fail("notification is for a different bundle id")

        if data.get("signedTransactionInfo"):
            data["transactionInfo"] = self.verifier.verify(data["signedTransactionInfo"])
        if data.get("signedRenewalInfo"):
            data["renewalInfo"] = self.verifier.verify(data["signedRenewalInfo"])
        payload["data"] = data

        notification_type = payload.get("notificationType")
        if not notification_type:
            raise _fail("notification type is missing")

        logger.debug(
            "Authenticated Apple notification",
            extra={"notification_type": notification_type, "subtype": payload.get("subtype")},
        )
        return VerifiedWebhook(
            gateway=self.gateway,
            event_type=str(notification_type),
            event_id=payload.get("notificationUUID"),
            payload=payload,
        )
