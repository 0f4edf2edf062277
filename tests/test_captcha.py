from unittest.mock import MagicMock, patch

import pytest
import requests

from security.captcha import verify_captcha_token
from utils.errors import TransientDependencyError


def _response(payload):
    resp = MagicMock()
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


class TestVerifyCaptchaToken:
    """Outbound call to the CAPTCHA provider."""

    def test_success(self, app):
        with patch("security.captcha.requests.post", return_value=_response({"success": True, "score": 0.8})) as post:
            result = verify_captcha_token("tok", remote_ip="1.2.3.4")

        assert result.success and result.score == 0.8
        _, kwargs = post.call_args
        assert kwargs["data"] == {"secret": "test-recaptcha-secret", "response": "tok", "remoteip": "1.2.3.4"}
        assert kwargs["timeout"] == 5

    def test_provider_rejection_carries_error_codes(self, app):
        payload = {"success": False, "error-codes": ["invalid-input-response"]}
        with patch("security.captcha.requests.post", return_value=_response(payload)):
            result = verify_captcha_token("tok")
        assert not result.success
        assert result.error_codes == ["invalid-input-response"]

    def test_timeout_counts_as_failure(self, app):
        with patch("security.captcha.requests.post", side_effect=requests.Timeout("slow")):
            result = verify_captcha_token("tok")
        assert result.success is False

    def test_garbage_body_counts_as_failure(self, app):
        resp = _response(None)
        resp.json.side_effect = ValueError("not json")
        with patch("security.captcha.requests.post", return_value=resp):
            assert verify_captcha_token("tok").success is False

    def test_missing_secret(self, app):
        app.config["RECAPTCHA_SECRET_KEY"] = None
        with pytest.raises(TransientDependencyError):
            verify_captcha_token("tok")
