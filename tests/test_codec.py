from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from pyasn1.codec.der import decoder

import rfc3161ng

from stamping.codec import (
    SHA256_OID,
    PKIStatus,
    TimestampProtocolCodec,
    TimestampRequest,
)
from stamping.errors import ProtocolError, ProtocolReason, TimestampUnavailable
from stamping.hashing import digest

from tests.conftest import build_response_der, build_token, build_tst_info_der, make_token_info

FP = digest(b"PAS-L1-GOV-PRC-001 v2.0.0")
NONCE = 0x0102030405060708
SHA256_OID_DER = bytes.fromhex("0609608648016503040201")


class TestTimestampRequest:
    def test_nonce_must_fit_64_bits(self):
        with pytest.raises(ValueError):
            TimestampRequest(fingerprint=FP, nonce=2**64)
        with pytest.raises(ValueError):
            TimestampRequest(fingerprint=FP, nonce=-1)

    def test_only_sha256(self):
        with pytest.raises(ValueError):
            TimestampRequest(fingerprint=FP, hash_algorithm_oid="1.3.14.3.2.26")


class TestEncodeRequest:
    def test_contains_sha256_oid_imprint_and_nonce(self):
        der = TimestampProtocolCodec().encode_request(TimestampRequest(fingerprint=FP, nonce=NONCE))
        assert SHA256_OID_DER in der
        assert FP.value in der
        assert bytes.fromhex("02080102030405060708") in der

    def test_decodes_as_timestamp_req(self):
        der = TimestampProtocolCodec().encode_request(TimestampRequest(fingerprint=FP, nonce=NONCE))
        tsq, rest = decoder.decode(der, asn1Spec=rfc3161ng.TimeStampReq())
        assert rest == b""
        assert int(tsq["nonce"]) == NONCE
        imprint = tsq["messageImprint"]
        assert str(imprint["hashAlgorithm"]["algorithm"]) == SHA256_OID
        assert bytes(imprint["hashedMessage"]) == FP.value

    def test_high_bit_nonce_is_minimal_signed_integer(self):
        der = TimestampProtocolCodec().encode_request(
            TimestampRequest(fingerprint=FP, nonce=0x8000000000000000)
        )
        assert bytes.fromhex("0209008000000000000000") in der

    def test_nonce_omitted_when_absent(self):
        codec = TimestampProtocolCodec()
        with_nonce = codec.encode_request(TimestampRequest(fingerprint=FP, nonce=NONCE))
        without = codec.encode_request(TimestampRequest(fingerprint=FP))
        # The only difference is the 10-byte INTEGER TLV of the nonce.
        assert len(with_nonce) - len(without) == 10
        assert bytes.fromhex("02080102030405060708") not in without

    def test_cert_req_flag(self):
        der = TimestampProtocolCodec().encode_request(TimestampRequest(fingerprint=FP, cert_req=True))
        assert bytes.fromhex("0101ff") in der

    def test_policy_sent_as_req_policy(self):
        codec = TimestampProtocolCodec()
        der = codec.encode_request(TimestampRequest(fingerprint=FP, policy="1.2.3.4.1"))
        tsq, _ = decoder.decode(der, asn1Spec=rfc3161ng.TimeStampReq())
        assert str(tsq["reqPolicy"]) == "1.2.3.4.1"

        tsq, _ = decoder.decode(codec.encode_request(TimestampRequest(fingerprint=FP)), asn1Spec=rfc3161ng.TimeStampReq())
        assert not tsq["reqPolicy"].isValue


def _decode(codec, request, status=PKIStatus.GRANTED, token_der=b"\x30\x00", info=None):
    with patch.object(
        TimestampProtocolCodec, "_parse_response", return_value=(int(status), {"status": int(status)}, token_der)
    ), patch.object(
        TimestampProtocolCodec, "read_token", return_value=info or make_token_info(FP, nonce=request.nonce)
    ):
        return codec.decode_response(b"\x30\x00", request)


class TestDecodeResponse:
    def test_granted_token_accepted(self):
        request = TimestampRequest(fingerprint=FP, nonce=NONCE)
        token = _decode(TimestampProtocolCodec(), request)
        assert token.der == b"\x30\x00"
        assert token.fingerprint == FP
        assert token.info.nonce == NONCE
        assert token.status is PKIStatus.GRANTED

    def test_nonce_mismatch_rejected(self):
        request = TimestampRequest(fingerprint=FP, nonce=NONCE)
        with pytest.raises(ProtocolError) as excinfo:
            _decode(TimestampProtocolCodec(), request, info=make_token_info(FP, nonce=NONCE + 1))
        assert excinfo.value.reason is ProtocolReason.NONCE_MISMATCH
        assert excinfo.value.details["expected_nonce"] == NONCE

    def test_missing_nonce_rejected(self):
        request = TimestampRequest(fingerprint=FP, nonce=NONCE)
        with pytest.raises(ProtocolError) as excinfo:
            _decode(TimestampProtocolCodec(), request, info=make_token_info(FP, nonce=None))
        assert excinfo.value.reason is ProtocolReason.NONCE_MISSING

    def test_nonce_not_required_when_not_sent(self):
        request = TimestampRequest(fingerprint=FP)
        token = _decode(TimestampProtocolCodec(), request, info=make_token_info(FP, nonce=7))
        assert token.info.nonce == 7

    def test_imprint_mismatch_rejected(self):
        request = TimestampRequest(fingerprint=FP)
        other = digest(b"another document")
        with pytest.raises(ProtocolError) as excinfo:
            _decode(TimestampProtocolCodec(), request, info=make_token_info(other))
        assert excinfo.value.reason is ProtocolReason.IMPRINT_MISMATCH
        assert excinfo.value.details["token_fingerprint"] == other.hex()

    def test_unsupported_algorithm_rejected(self):
        request = TimestampRequest(fingerprint=FP)
        info = make_token_info(FP, hash_algorithm_oid="1.3.14.3.2.26")
        with pytest.raises(ProtocolError) as excinfo:
            _decode(TimestampProtocolCodec(), request, info=info)
        assert excinfo.value.reason is ProtocolReason.UNSUPPORTED_ALGORITHM

    def test_rejection_status(self):
        request = TimestampRequest(fingerprint=FP)
        with pytest.raises(ProtocolError) as excinfo:
            _decode(TimestampProtocolCodec(), request, status=PKIStatus.REJECTION, token_der=None)
        assert excinfo.value.reason is ProtocolReason.REJECTED

    def test_waiting_status_is_transient(self):
        request = TimestampRequest(fingerprint=FP)
        with pytest.raises(TimestampUnavailable):
            _decode(TimestampProtocolCodec(), request, status=PKIStatus.WAITING, token_der=None)

    def test_missing_token(self):
        request = TimestampRequest(fingerprint=FP)
        with pytest.raises(ProtocolError) as excinfo:
            _decode(TimestampProtocolCodec(), request, token_der=None)
        assert excinfo.value.reason is ProtocolReason.MISSING_TOKEN

    def test_granted_with_mods_accepted_by_default(self):
        request = TimestampRequest(fingerprint=FP)
        token = _decode(TimestampProtocolCodec(), request, status=PKIStatus.GRANTED_WITH_MODS)
        assert token.status is PKIStatus.GRANTED_WITH_MODS

    def test_granted_with_mods_rejected_when_strict(self):
        request = TimestampRequest(fingerprint=FP)
        with pytest.raises(ProtocolError) as excinfo:
            _decode(
                TimestampProtocolCodec(accept_granted_with_mods=False),
                request,
                status=PKIStatus.GRANTED_WITH_MODS,
            )
        assert excinfo.value.reason is ProtocolReason.MODIFIED_GRANT

    def test_malformed_der(self):
        request = TimestampRequest(fingerprint=FP)
        with pytest.raises(ProtocolError) as excinfo:
            TimestampProtocolCodec().decode_response(b"not a der structure", request)
        assert excinfo.value.reason is ProtocolReason.MALFORMED


class TestReadToken:
    def test_garbage_is_malformed(self):
        with pytest.raises(ProtocolError) as excinfo:
            TimestampProtocolCodec().read_token(b"\x04\x02ab")
        assert excinfo.value.reason is ProtocolReason.MALFORMED


def _granted(hashed_message=FP.value, status=PKIStatus.GRANTED, **tst_overrides):
    token = build_token(build_tst_info_der(hashed_message, **tst_overrides))
    return build_response_der(int(status), token)


class TestDecodeRealResponse:
    def test_granted_round_trip(self):
        request = TimestampRequest(fingerprint=FP, nonce=NONCE)
        token = TimestampProtocolCodec().decode_response(_granted(nonce=NONCE), request)

        assert token.status is PKIStatus.GRANTED
        assert token.fingerprint == FP
        assert token.info.hash_algorithm_oid == SHA256_OID
        assert token.info.serial_number == 42
        assert token.info.policy == "1.2.3.4.1"
        assert token.info.nonce == NONCE
        assert token.info.gen_time == datetime(2025, 3, 13, 9, 15, tzinfo=timezone.utc)

    def test_stored_token_reads_back(self):
        request = TimestampRequest(fingerprint=FP, nonce=NONCE)
        codec = TimestampProtocolCodec()
        token = codec.decode_response(_granted(nonce=NONCE), request)
        assert codec.read_token(token.der) == token.info

    def test_echoed_nonce_differs(self):
        request = TimestampRequest(fingerprint=FP, nonce=7)
        with pytest.raises(ProtocolError) as excinfo:
            TimestampProtocolCodec().decode_response(_granted(nonce=8), request)
        assert excinfo.value.reason is ProtocolReason.NONCE_MISMATCH

    def test_nonce_not_echoed(self):
        request = TimestampRequest(fingerprint=FP, nonce=7)
        with pytest.raises(ProtocolError) as excinfo:
            TimestampProtocolCodec().decode_response(_granted(), request)
        assert excinfo.value.reason is ProtocolReason.NONCE_MISSING

    def test_token_for_other_imprint(self):
        request = TimestampRequest(fingerprint=FP)
        other = digest(b"another document")
        with pytest.raises(ProtocolError) as excinfo:
            TimestampProtocolCodec().decode_response(_granted(other.value), request)
        assert excinfo.value.reason is ProtocolReason.IMPRINT_MISMATCH

    def test_token_with_other_hash_algorithm(self):
        request = TimestampRequest(fingerprint=FP)
        response = _granted(hash_algorithm_oid="2.16.840.1.101.3.4.2.3")
        with pytest.raises(ProtocolError) as excinfo:
            TimestampProtocolCodec().decode_response(response, request)
        assert excinfo.value.reason is ProtocolReason.UNSUPPORTED_ALGORITHM

    def test_granted_with_mods(self):
        request = TimestampRequest(fingerprint=FP)
        response = _granted(status=PKIStatus.GRANTED_WITH_MODS)

        token = TimestampProtocolCodec().decode_response(response, request)
        assert token.status is PKIStatus.GRANTED_WITH_MODS

        with pytest.raises(ProtocolError) as excinfo:
            TimestampProtocolCodec(accept_granted_with_mods=False).decode_response(response, request)
        assert excinfo.value.reason is ProtocolReason.MODIFIED_GRANT

    def test_rejection_carries_status_text(self):
        request = TimestampRequest(fingerprint=FP)
        response = build_response_der(int(PKIStatus.REJECTION), status_string="bad request")
        with pytest.raises(ProtocolError) as excinfo:
            TimestampProtocolCodec().decode_response(response, request)
        assert excinfo.value.reason is ProtocolReason.REJECTED
        assert excinfo.value.details["status"] == 2
        assert excinfo.value.details["status_string"] == ["bad request"]

    def test_waiting(self):
        request = TimestampRequest(fingerprint=FP)
        with pytest.raises(TimestampUnavailable):
            TimestampProtocolCodec().decode_response(build_response_der(int(PKIStatus.WAITING)), request)

    def test_granted_without_token(self):
        request = TimestampRequest(fingerprint=FP)
        with pytest.raises(ProtocolError) as excinfo:
            TimestampProtocolCodec().decode_response(build_response_der(0), request)
        assert excinfo.value.reason is ProtocolReason.MISSING_TOKEN

    def test_trailing_bytes(self):
        request = TimestampRequest(fingerprint=FP)
        with pytest.raises(ProtocolError) as excinfo:
            TimestampProtocolCodec().decode_response(_granted() + b"\x00", request)
        assert excinfo.value.reason is ProtocolReason.MALFORMED
