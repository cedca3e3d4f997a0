from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import Any

from pyasn1.codec.der import decoder, encoder
from pyasn1.error import PyAsn1Error
from pyasn1.type import univ

import rfc3161ng

from stamping.errors import ProtocolError, ProtocolReason, TimestampUnavailable
from stamping.hashing import DocumentFingerprint

logger = logging.getLogger(__name__)

SHA256_OID = "2.16.840.1.101.3.4.2.1"
MAX_NONCE = 2**64 - 1

_DECODE_ERRORS = (PyAsn1Error, ValueError, TypeError, IndexError, KeyError)


class PKIStatus(IntEnum):
    GRANTED = 0
    GRANTED_WITH_MODS = 1
    REJECTION = 2
    WAITING = 3
    REVOCATION_WARNING = 4
    REVOCATION_NOTIFICATION = 5


@dataclass(frozen=True)
class TimestampRequest:
    fingerprint: DocumentFingerprint
    nonce: int | None = None
    cert_req: bool = True
    policy: str | None = None
    hash_algorithm_oid: str = SHA256_OID

    def __post_init__(self) -> None:
        if self.hash_algorithm_oid != SHA256_OID:
            raise ValueError("only SHA-256 message imprints are supported")
        if self.nonce is not None and not 0 <= self.nonce <= MAX_NONCE:
            raise ValueError("nonce must be a 64-bit unsigned integer")


@dataclass(frozen=True)
class TokenInfo:
    """Fields of the TSTInfo carried inside a TimeStampToken."""

    hash_algorithm_oid: str
    hashed_message: bytes
    serial_number: int
    gen_time: datetime
    policy: str
    nonce: int | None = None


@dataclass(frozen=True)
class TimestampToken:
    der: bytes
    info: TokenInfo
    status: PKIStatus = PKIStatus.GRANTED

    @property
    def fingerprint(self) -> DocumentFingerprint:
        return DocumentFingerprint(self.info.hashed_message)


class TimestampProtocolCodec:
    """RFC 3161 request encoder and response validator.

    Requests are built with ``rfc3161ng`` and DER-encoded with ``pyasn1``.
    A response is only turned into a :class:`TimestampToken` when its status
    is acceptable and its TSTInfo provably answers the request: same
    SHA-256 imprint and, when one was sent, the same nonce.
    """

    def __init__(self, *, accept_granted_with_mods: bool = True) -> None:
        self.accept_granted_with_mods = accept_granted_with_mods

    def encode_request(self, request: TimestampRequest) -> bytes:
        tsq = rfc3161ng.make_timestamp_request(
            digest=request.fingerprint.value,
            hashname="sha256",
            include_tsa_certificate=request.cert_req,
            nonce=request.nonce,
            tsa_policy_id=request.policy,
        )
        return encoder.encode(tsq)

    def decode_response(self, data: bytes, request: TimestampRequest) -> TimestampToken:
        status, status_details, token_der = self._parse_response(data)
        self._check_status(status, status_details)
        if token_der is None:
            raise ProtocolError(
                ProtocolReason.MISSING_TOKEN,
                "TSA response carries no timestamp token",
                details=status_details,
            )
        info = self.read_token(token_der)
        self._match(info, request)
        return TimestampToken(der=token_der, info=info, status=PKIStatus(status))

    def read_token(self, der: bytes) -> TokenInfo:
        """Parse a DER TimeStampToken and return its TSTInfo fields."""
        try:
            token, rest = decoder.decode(der, asn1Spec=rfc3161ng.TimeStampToken())
            if rest:
                raise ValueError("extra data after TimeStampToken")
            return self._token_info(self._extract_tst_info(token))
        except _DECODE_ERRORS as exc:
            raise ProtocolError(
                ProtocolReason.MALFORMED,
                f"timestamp token could not be decoded: {exc}",
            ) from exc

    @staticmethod
    def _parse_response(data: bytes) -> tuple[int, dict[str, Any], bytes | None]:
        try:
            tsr, rest = decoder.decode(data, asn1Spec=rfc3161ng.TimeStampResp())
            if rest:
                raise ValueError("extra data after TimeStampResp")
            status_info = tsr.getComponentByName("status")
            status = int(status_info.getComponentByName("status"))

            details: dict[str, Any] = {"status": status}
            status_string = status_info.getComponentByName("statusString")
            if status_string.isValue:
                details["status_string"] = [str(s) for s in status_string]
            fail_info = status_info.getComponentByName("failInfo")
            if fail_info.isValue:
                details["fail_info"] = str(fail_info)

            token = tsr.getComponentByName("timeStampToken")
            token_der = encoder.encode(token) if token.isValue else None
        except _DECODE_ERRORS as exc:
            raise ProtocolError(
                ProtocolReason.MALFORMED,
                f"TSA response could not be decoded: {exc}",
            ) from exc
        return status, details, token_der

    def _check_status(self, status: int, details: dict[str, Any]) -> None:
        if status == PKIStatus.GRANTED:
            return
        if status == PKIStatus.GRANTED_WITH_MODS:
            if self.accept_granted_with_mods:
                logger.info("Accepting TSA grant with modifications")
                return
            raise ProtocolError(
                ProtocolReason.MODIFIED_GRANT,
                "TSA granted the request with modifications",
                details=details,
            )
        if status == PKIStatus.WAITING:
            raise TimestampUnavailable("TSA asked the client to wait", details=details)
        raise ProtocolError(
            ProtocolReason.REJECTED,
            f"TSA rejected the request (status {status})",
            details=details,
        )

    @staticmethod
    def _match(info: TokenInfo, request: TimestampRequest) -> None:
        if info.hash_algorithm_oid != SHA256_OID:
            raise ProtocolError(
                ProtocolReason.UNSUPPORTED_ALGORITHM,
                f"token uses unsupported hash algorithm {info.hash_algorithm_oid}",
            )
        if info.hashed_message != request.fingerprint.value:
            raise ProtocolError(
                ProtocolReason.IMPRINT_MISMATCH,
                "token message imprint does not match the requested fingerprint",
                details={
                    "expected_fingerprint": request.fingerprint.hex(),
                    "token_fingerprint": info.hashed_message.hex(),
                },
            )
        if request.nonce is None:
            return
        if info.nonce is None:
            raise ProtocolError(ProtocolReason.NONCE_MISSING, "TSA did not echo the request nonce")
        if info.nonce != request.nonce:
            raise ProtocolError(
                ProtocolReason.NONCE_MISMATCH,
                "TSA echoed a different nonce",
                details={"expected_nonce": request.nonce, "token_nonce": info.nonce},
            )

    @staticmethod
    def _extract_tst_info(token: rfc3161ng.TimeStampToken) -> Any:
        tstinfo_raw = (
            token.getComponentByName("content")
            .getComponentByPosition(2)
            .getComponentByPosition(1)
        )
        tstinfo_octet, rest = decoder.decode(tstinfo_raw, asn1Spec=univ.OctetString())
        if rest:
            raise ValueError("extra data after TSTInfo octets")
        tstinfo, rest = decoder.decode(tstinfo_octet, asn1Spec=rfc3161ng.TSTInfo())
        if rest:
            raise ValueError("extra data after TSTInfo")
        return tstinfo

    @staticmethod
    def _token_info(tstinfo: Any) -> TokenInfo:
        imprint = tstinfo.getComponentByName("messageImprint")
        algorithm = imprint.getComponentByName("hashAlgorithm").getComponentByName("algorithm")
        nonce = tstinfo.getComponentByName("nonce")
        return TokenInfo(
            hash_algorithm_oid=str(algorithm),
            hashed_message=bytes(imprint.getComponentByName("hashedMessage")),
            serial_number=int(tstinfo.getComponentByName("serialNumber")),
            gen_time=tstinfo.getComponentByName("genTime").asDateTime,
            policy=str(tstinfo.getComponentByName("policy")),
            nonce=int(nonce) if nonce.isValue else None,
        )
