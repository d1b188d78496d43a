import pytest

pytestmark = pytest.mark.unit


class TestSensitiveDataMasking:
    def test_email_masked(self):
        from config.settings import mask_sensitive_data

        event_dict = {"event": "test", "data": "notice sent to guest@example.com"}
        result = mask_sensitive_data(None, None, event_dict)
        assert "guest@example.com" not in result["data"]
        assert "***MASKED***" in result["data"]

    def test_password_masked(self):
        from config.settings import mask_sensitive_data

        event_dict = {"event": "test", "data": "password='s3cret123'"}
        result = mask_sensitive_data(None, None, event_dict)
        assert "s3cret123" not in result["data"]
        assert "***MASKED***" in result["data"]

    def test_token_masked(self):
        from config.settings import mask_sensitive_data

        event_dict = {"event": "test", "header": "token=abc123xyz"}
        result = mask_sensitive_data(None, None, event_dict)
        assert "abc123xyz" not in result["header"]
        assert "***MASKED***" in result["header"]

    def test_signature_masked_inline(self):
        from config.settings import mask_sensitive_data

        event_dict = {"event": "test", "data": "signature=9f86d081884c7d65"}
        result = mask_sensitive_data(None, None, event_dict)
        assert "9f86d081884c7d65" not in result["data"]

    @pytest.mark.parametrize("key", ["signature", "otp", "code", "secret"])
    def test_sensitive_keys_masked_whole(self, key):
        from config.settings import mask_sensitive_data

        result = mask_sensitive_data(None, None, {"event": "test", key: "123456"})
        assert result[key] == "***MASKED***"

    def test_non_sensitive_data_unchanged(self):
        from config.settings import mask_sensitive_data

        event_dict = {"event": "order.created", "order_id": "0190f3c2-7a1b-7c3d-8e4f-123456789abc"}
        result = mask_sensitive_data(None, None, event_dict)
        assert result["order_id"] == "0190f3c2-7a1b-7c3d-8e4f-123456789abc"
        assert result["event"] == "order.created"
