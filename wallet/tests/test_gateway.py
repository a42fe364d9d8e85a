"""
Unit Tests for the Squad Payout Gateway

Tests cover:
1. Payout submission payloads and accepted/rejected outcomes
2. Transport failures mapped to GatewayUnavailable
3. Transfer status requery mapping
4. Bank list
"""

from decimal import Decimal

import pytest
import requests

from wallet.exceptions import GatewayUnavailable
from wallet.gateway import PayoutRequest, PayoutStatus, SquadPayoutGateway, SubmitStatus, to_kobo


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else str(body)

    def json(self):
        if self._body is None:
            raise ValueError("No JSON object could be decoded")
        return self._body


class FakeSession:
    def __init__(self, *responses):
        self.headers = {}
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "timeout": timeout, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def payout(amount="400.00"):
    return PayoutRequest(
        reference="WD-123", amount=Decimal(amount), bank_code="058",
        account_number="0123456789", account_name="Greenfield Academy",
    )


def gateway_with(*responses):
    session = FakeSession(*responses)
    return SquadPayoutGateway("https://sandbox-api-d.squadco.com/", "sk_test", timeout=5, session=session), session


class TestSubmitPayout:
    """Tests for POST /payout/transfer."""

    def test_accepted(self):
        gateway, session = gateway_with(FakeResponse(200, {
            "success": True, "message": "Success", "data": {"transaction_reference": "SQ-987"},
        }))

        result = gateway.submit_payout(payout())

        assert result.status == SubmitStatus.ACCEPTED
        assert result.gateway_reference == "SQ-987"
        call = session.calls[0]
        assert call["url"] == "https://sandbox-api-d.squadco.com/payout/transfer"
        assert call["timeout"] == 5
        assert call["json"]["amount"] == "40000"
        assert call["json"]["transaction_reference"] == "WD-123"
        assert session.headers["Authorization"] == "Bearer sk_test"

    def test_rejected_by_status_code(self):
        gateway, _ = gateway_with(FakeResponse(400, {"success": False, "message": "Invalid account"}))

        result = gateway.submit_payout(payout())

        assert result.status == SubmitStatus.REJECTED
        assert result.message == "Invalid account"

    def test_rejected_by_success_flag(self):
        gateway, _ = gateway_with(FakeResponse(200, {"success": False, "message": "Insufficient merchant balance"}))
        assert gateway.submit_payout(payout()).status == SubmitStatus.REJECTED

    def test_timeout_is_unavailable(self):
        gateway, _ = gateway_with(requests.exceptions.Timeout("read timed out"))
        with pytest.raises(GatewayUnavailable):
            gateway.submit_payout(payout())

    def test_server_error_is_unavailable(self):
        gateway, _ = gateway_with(FakeResponse(502, text="Bad Gateway"))
        with pytest.raises(GatewayUnavailable):
            gateway.submit_payout(payout())

    def test_non_json_is_unavailable(self):
        gateway, _ = gateway_with(FakeResponse(200, None, text="<html>"))
        with pytest.raises(GatewayUnavailable):
            gateway.submit_payout(payout())

    def test_to_kobo(self):
        assert to_kobo(Decimal("1234.56")) == 123456
        assert to_kobo(Decimal("0.01")) == 1


class TestQueryStatus:
    """Tests for POST /payout/requery."""

    @pytest.mark.parametrize("word,expected", [
        ("success", PayoutStatus.SETTLED),
        ("Successful", PayoutStatus.SETTLED),
        ("failed", PayoutStatus.FAILED),
        ("reversed", PayoutStatus.FAILED),
        ("pending", PayoutStatus.UNKNOWN),
        ("", PayoutStatus.UNKNOWN),
    ])
    def test_status_mapping(self, word, expected):
        gateway, _ = gateway_with(FakeResponse(200, {"data": {"transaction_status": word}}))
        assert gateway.query_status("SQ-987") == expected

    def test_not_found_is_unknown(self):
        gateway, _ = gateway_with(FakeResponse(404, {"message": "Transaction not found"}))
        assert gateway.query_status("SQ-987") == PayoutStatus.UNKNOWN

    def test_connection_error_is_unavailable(self):
        gateway, _ = gateway_with(requests.exceptions.ConnectionError("connection refused"))
        with pytest.raises(GatewayUnavailable):
            gateway.query_status("SQ-987")


class TestListBanks:
    """Tests for GET /banks."""

    def test_list_banks(self):
        gateway, session = gateway_with(FakeResponse(200, {"data": [
            {"code": "058", "name": "Guaranty Trust Bank"},
            {"code": None, "name": "Broken row"},
            {"code": "044", "name": "Access Bank"},
        ]}))

        banks = gateway.list_banks()

        assert [b.code for b in banks] == ["058", "044"]
        assert session.calls[0]["method"] == "GET"

    def test_bank_list_error(self):
        gateway, _ = gateway_with(FakeResponse(401, {"message": "Unauthorized"}))
        with pytest.raises(GatewayUnavailable):
            gateway.list_banks()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
