"""
Tests for outbound integrations: password hashing, JWTs, mail and avatar upload.
HTTP backends run against httpx.MockTransport; nothing leaves the process.
"""
import json

import httpx
import pytest

from config.settings import MailConfig, UploadConfig
from core.exceptions import AuthenticationError
from integrations.assets import CloudinaryUploader, LocalAssetUploader, create_asset_uploader
from integrations.mailer import BrevoMailer, LogMailer, create_mailer


class TestPasswordHasher:
    def test_hash_and_verify(self, fast_hasher):
        hashed = fast_hasher.hash("secret-1")
        assert hashed != "secret-1"
        assert fast_hasher.verify(hashed, "secret-1")
        assert not fast_hasher.verify(hashed, "secret-2")

    def test_garbage_hash_is_false(self, fast_hasher):
        assert not fast_hasher.verify("not-an-argon2-hash", "secret-1")


class TestJwtProvider:
    def test_round_trip(self, jwt_provider):
        token = jwt_provider.generate_token("s3cret", 60, {"_id": "u1", "email": "a@b.c"})
        decoded = jwt_provider.verify_token("s3cret", token)
        assert decoded["_id"] == "u1"
        assert decoded["email"] == "a@b.c"

    def test_wrong_secret(self, jwt_provider):
        token = jwt_provider.generate_token("s3cret", 60, {"_id": "u1"})
        with pytest.raises(AuthenticationError) as exc:
            jwt_provider.verify_token("other", token)
        assert exc.value.message == "Invalid token."
        assert exc.value.__cause__ is not None


class TestMailer:
    def test_factory(self):
        assert isinstance(create_mailer(MailConfig()), LogMailer)
        assert isinstance(create_mailer(MailConfig(provider="brevo", api_key="k")), BrevoMailer)

    @pytest.mark.asyncio
    async def test_brevo_request(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return httpx.Response(201, json={"messageId": "<m1@brevo>"})

        mailer = BrevoMailer(MailConfig(provider="brevo", api_key="key-1"))
        mailer.client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), headers={"api-key": "key-1"})
        result = await mailer.send_email("alice@example.com", "Hi", "<p>hello</p>")
        await mailer.close()

        assert result == {"status": "sent", "to": "alice@example.com", "message_id": "<m1@brevo>"}
        body = json.loads(seen[0].content)
        assert body["to"] == [{"email": "alice@example.com"}]
        assert body["htmlContent"] == "<p>hello</p>"
        assert seen[0].headers["api-key"] == "key-1"

    @pytest.mark.asyncio
    async def test_brevo_http_error_propagates(self):
        mailer = BrevoMailer(MailConfig(provider="brevo"))
        mailer.client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(401, json={})))
        with pytest.raises(httpx.HTTPStatusError):
            await mailer.send_email("alice@example.com", "Hi", "<p>hello</p>")
        await mailer.close()


class TestAssetUploader:
    def test_factory(self):
        assert isinstance(create_asset_uploader(UploadConfig()), LocalAssetUploader)
        uploader = create_asset_uploader(UploadConfig(
            provider="cloudinary", cloudinary_cloud_name="demo", cloudinary_upload_preset="p"))
        assert isinstance(uploader, CloudinaryUploader)
        assert uploader.endpoint == "https://api.cloudinary.com/v1_1/demo/image/upload"

    @pytest.mark.asyncio
    async def test_local_upload(self, tmp_path):
        uploader = LocalAssetUploader(str(tmp_path), "http://cdn.test/")
        url = await uploader.upload(b"bytes", "users", "me.jpg", "image/jpeg")
        assert url.startswith("http://cdn.test/users/") and url.endswith(".jpg")
        assert (tmp_path / "users" / url.rsplit("/", 1)[1]).read_bytes() == b"bytes"

    @pytest.mark.asyncio
    async def test_cloudinary_upload(self):
        def handler(request: httpx.Request):
            assert b"upload_preset" in request.content
            return httpx.Response(200, json={"secure_url": "https://res.cloudinary.com/demo/x.png"})

        uploader = CloudinaryUploader("demo", "preset")
        uploader.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        url = await uploader.upload(b"bytes", "users", "x.png", "image/png")
        await uploader.close()
        assert url == "https://res.cloudinary.com/demo/x.png"
