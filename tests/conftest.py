from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from pyasn1.codec.der import encoder
from pyasn1.type import univ
from pyasn1_modules import rfc2315

import rfc3161ng


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from stamping.codec import SHA256_OID, TimestampProtocolCodec, TimestampToken, TokenInfo  # noqa: E402
from stamping.hashing import DocumentFingerprint  # noqa: E402


def make_token_info(fingerprint: DocumentFingerprint, **overrides) -> TokenInfo:
    defaults = dict(
        hash_algorithm_oid=SHA256_OID,
        hashed_message=fingerprint.value,
        serial_number=42,
        gen_time=datetime(2025, 3, 13, 9, 15, tzinfo=timezone.utc),
        policy="1.2.3.4.1",
        nonce=None,
    )
    defaults.update(overrides)
    return TokenInfo(**defaults)


def make_token(fingerprint: DocumentFingerprint, **overrides) -> TimestampToken:
    return TimestampToken(
        der=b"\x30\x03\x02\x01\x01" + fingerprint.value,
        info=make_token_info(fingerprint, **overrides),
    )


def build_tst_info_der(
    hashed_message: bytes,
    *,
    nonce: int | None = None,
    hash_algorithm_oid: str = SHA256_OID,
    serial_number: int = 42,
    gen_time: str = "20250313091500Z",
    policy: str = "1.2.3.4.1",
) -> bytes:
    tst = rfc3161ng.TSTInfo()
    tst["version"] = 1
    tst["policy"] = policy
    tst["messageImprint"]["hashAlgorithm"]["algorithm"] = hash_algorithm_oid
    tst["messageImprint"]["hashedMessage"] = hashed_message
    tst["serialNumber"] = serial_number
    tst["genTime"] = gen_time
    if nonce is not None:
        tst["nonce"] = nonce
    return encoder.encode(tst)


def build_token(tst_info_der: bytes) -> rfc3161ng.TimeStampToken:
    """Unsigned TimeStampToken carrying *tst_info_der* as its encapsulated content."""
    token = rfc3161ng.TimeStampToken()
    token["contentType"] = rfc2315.signedData
    signed = token["content"]
    signed["version"] = 3
    signed["contentInfo"]["contentType"] = rfc3161ng.id_ct_TSTInfo
    signed["contentInfo"]["content"] = encoder.encode(univ.OctetString(tst_info_der))
    return token


def build_response_der(
    status: int = 0,
    token: rfc3161ng.TimeStampToken | None = None,
    status_string: str | None = None,
) -> bytes:
    resp = rfc3161ng.TimeStampResp()
    resp["status"]["status"] = status
    if status_string is not None:
        resp["status"]["statusString"].setComponentByPosition(0, status_string)
    if token is not None:
        resp["timeStampToken"] = token
    return encoder.encode(resp)


class FakeTokenCodec(TimestampProtocolCodec):
    """Codec whose ``read_token`` trusts the fingerprint appended to the DER."""

    def read_token(self, der: bytes) -> TokenInfo:
        if not der.startswith(b"\x30\x03\x02\x01\x01") or len(der) != 37:
            return super().read_token(der)
        return make_token_info(DocumentFingerprint(der[5:]))


@pytest.fixture()
def fake_codec() -> FakeTokenCodec:
    return FakeTokenCodec()


@pytest.fixture()
def publisher_app(tmp_path: Path, fake_codec: FakeTokenCodec):
    from publisher.app import create_app
    from publisher.services import Services
    from publisher.storage import LocalBlobStore
    from stamping.audit_pack import AuditPackBuilder
    from stamping.idempotency import IdempotencyStore

    tsa = MagicMock()
    tsa.request_timestamp.side_effect = lambda fingerprint, use_nonce=True, cancel=None: make_token(fingerprint)
    tsa.health_check.return_value = {"status": "ok", "message": "TSA accessible"}

    services = Services(
        blobs=LocalBlobStore(tmp_path / "blobs"),
        idempotency=IdempotencyStore(ttl=timedelta(hours=24)),
        codec=fake_codec,
        tsa=tsa,
        builder=AuditPackBuilder(fake_codec),
    )
    return create_app(services=services)


@pytest.fixture()
def idem_header():
    def _idem(key: str) -> dict[str, str]:
        return {"Idempotency-Key": key}

    return _idem
