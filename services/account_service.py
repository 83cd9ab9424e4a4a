"""
Account Service — registration, verification, sign-in, token refresh and
profile updates.

Profile updates that change the data copied into card comments (display
name, avatar) enqueue exactly one propagation job. Enqueueing is
fire-and-forget from the caller's point of view: a queue outage is logged
and never turns a successful profile update into an error.
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional
from urllib.parse import urlencode

from config.settings import Settings
from core.exceptions import (
    AuthenticationError, ConflictError, NotFoundError, ValidationError,
)
from database.store_base import BaseAccountStore
from integrations.assets import BaseAssetUploader
from integrations.mailer import BaseMailer
from integrations.security import JwtProvider, PasswordHasher
from job_queue.client import JobQueue
from job_queue.message_queue import JobOptions, QueueJob
from models.schemas import AvatarFile, ProfileUpdate, SignInResult, UserRecord, UserSnapshot

logger = structlog.get_logger()

# Profile fields a general update may write.
_GENERAL_UPDATE_FIELDS = ("display_name",)

VERIFICATION_SUBJECT = "TaskBoard: Please verify your email before using our services!"


def requires_comment_propagation(data: ProfileUpdate, avatar_file: Optional[AvatarFile]) -> bool:
    """
    True iff the update touches what card comments copy from the user:
    a newly uploaded avatar, or a display name in a general profile update.
    A password change never qualifies, even if a display name rides along.
    """
    if avatar_file is not None:
        return True
    if data.current_password and data.new_password:
        return False
    return bool(data.display_name)


class AccountService:

    def __init__(
        self,
        account_store: BaseAccountStore,
        queue: JobQueue,
        settings: Settings,
        password_hasher: PasswordHasher = None,
        jwt_provider: JwtProvider = None,
        mailer: BaseMailer = None,
        uploader: BaseAssetUploader = None,
    ):
        self.accounts = account_store
        self.queue = queue
        self.settings = settings
        self.passwords = password_hasher or PasswordHasher()
        self.tokens = jwt_provider or JwtProvider(settings.auth.algorithm)
        self.mailer = mailer
        self.uploader = uploader

    @property
    def propagation_options(self) -> JobOptions:
        q = self.settings.queue
        return JobOptions(
            max_attempts=q.max_attempts,
            backoff_delay_ms=q.backoff_delay_ms,
            backoff_type=q.backoff_type,
        )

    # ── Registration ──────────────────────────────────────────

    async def create_new(self, email: str, password: str) -> dict[str, Any]:
        email = (email or "").strip()
        if "@" not in email or not password:
            raise ValidationError("A valid email and password are required.")
        if await self.accounts.find_one_by_any("email", email):
            raise ConflictError("Email already exist.", details={"email": email})

        username = email.split("@")[0]
        user = await self.accounts.create_new(UserRecord(
            email=email,
            password=self.passwords.hash(password),
            username=username,
            display_name=username,
            verify_token=str(uuid.uuid4()),
        ))
        logger.info("user_registered", user_id=user.id, email=user.email)

        await self._send_verification(user)
        return user.public()

    async def _send_verification(self, user: UserRecord) -> None:
        if self.mailer is None:
            return
        query = urlencode({"email": user.email, "token": user.verify_token})
        link = f"{self.settings.website_domain}/account/verification?{query}"
        html = (
            "<h3>Here is your verification link:</h3>"
            f"<h3>{link}</h3>"
            f"<h3>Sincerely,<br/> - {self.settings.app_name} - </h3>"
        )
        await self.mailer.send_email(user.email, VERIFICATION_SUBJECT, html)

    async def verify_account(self, email: str, token: str) -> dict[str, Any]:
        user = await self.accounts.find_one_by_any("email", email)
        if not user:
            raise NotFoundError("Email not found.", details={"email": email})
        if user.is_active:
            raise ValidationError("Your account is already active.")
        if not token or token != user.verify_token:
            raise ValidationError("Invalid token.")

        updated = await self.accounts.update(user.id, {"verify_token": None, "is_active": True})
        logger.info("user_verified", user_id=user.id)
        return updated.public()

    # ── Sign-in / tokens ──────────────────────────────────────

    async def sign_in(self, email: str, password: str) -> SignInResult:
        user = await self.accounts.find_one_by_any("email", email)
        if not user:
            raise NotFoundError("Email not found.", details={"email": email})
        if not user.is_active:
            raise AuthenticationError("Your account is not active.")
        if not self.passwords.verify(user.password, password or ""):
            raise AuthenticationError("Your email or password is incorrect.")

        auth = self.settings.auth
        claims = {"_id": user.id, "email": user.email}
        result = SignInResult(
            access_token=self.tokens.generate_token(
                auth.access_token_secret, auth.access_token_life, claims),
            refresh_token=self.tokens.generate_token(
                auth.refresh_token_secret, auth.refresh_token_life, claims),
            user=user.public(),
        )
        logger.info("user_signed_in", user_id=user.id)
        return result

    async def refresh_token(self, refresh_token: str) -> dict[str, str]:
        """
        Issue a new access token from a valid refresh token. The claims are
        the user's fixed identity fields, so the store is not consulted.
        """
        if not refresh_token:
            raise AuthenticationError("Refresh token is required.")
        auth = self.settings.auth
        decoded = self.tokens.verify_token(auth.refresh_token_secret, refresh_token)
        access_token = self.tokens.generate_token(
            auth.access_token_secret,
            auth.access_token_life,
            {"_id": decoded.get("_id"), "email": decoded.get("email")},
        )
        return {"access_token": access_token}

    def authenticate(self, access_token: str) -> dict[str, Any]:
        """Decode an access token; raises AuthenticationError when it is not usable."""
        if not access_token:
            raise AuthenticationError("Unauthorized! (Token not found)")
        decoded = self.tokens.verify_token(self.settings.auth.access_token_secret, access_token)
        if not decoded.get("_id"):
            raise AuthenticationError("Invalid token.")
        return decoded

    # ── Profile update ────────────────────────────────────────

    async def update(
        self,
        user_id: str,
        data: ProfileUpdate,
        avatar_file: Optional[AvatarFile] = None,
    ) -> dict[str, Any]:
        existing = await self.accounts.find_one_by_any("id", user_id)
        if not existing:
            raise NotFoundError("User not found.", details={"user_id": user_id})

        if avatar_file is not None:
            url = await self._upload_avatar(avatar_file)
            updated = await self.accounts.update(user_id, {"avatar": url})
        elif data.current_password and data.new_password:
            if not self.passwords.verify(existing.password, data.current_password):
                raise ValidationError("Your current password is incorrect.")
            updated = await self.accounts.update(
                user_id, {"password": self.passwords.hash(data.new_password)})
        else:
            fields = {
                k: v for k, v in data.model_dump(include=set(_GENERAL_UPDATE_FIELDS)).items()
                if v is not None
            }
            if "display_name" in fields and not fields["display_name"].strip():
                raise ValidationError("Display name cannot be empty.")
            updated = await self.accounts.update(user_id, fields) if fields else existing

        if updated is None:
            raise NotFoundError("User not found.", details={"user_id": user_id})

        if requires_comment_propagation(data, avatar_file):
            await self._enqueue_comment_propagation(updated)

        logger.info("user_updated", user_id=user_id)
        return updated.public()

    async def _upload_avatar(self, avatar_file: AvatarFile) -> str:
        upload = self.settings.upload
        if avatar_file.content_type not in upload.allowed_content_types:
            raise ValidationError("File type is not supported.",
                                  details={"content_type": avatar_file.content_type})
        if len(avatar_file.data) > upload.max_avatar_bytes:
            raise ValidationError("File is too large.",
                                  details={"max_bytes": upload.max_avatar_bytes})
        if self.uploader is None:
            raise ValidationError("Avatar uploads are not configured.")
        return await self.uploader.upload(
            avatar_file.data, "users", avatar_file.filename, avatar_file.content_type)

    async def _enqueue_comment_propagation(self, user: UserRecord) -> Optional[QueueJob]:
        snapshot = UserSnapshot.from_record(user)
        try:
            job = await self.queue.enqueue(
                self.settings.queue.propagation_queue,
                snapshot.model_dump(mode="json"),
                self.propagation_options,
            )
        except Exception:
            # The profile update already succeeded; stale comments are an operational issue.
            logger.exception("comment_propagation_enqueue_failed", user_id=user.id)
            return None
        logger.info("comment_propagation_enqueued", user_id=user.id, job_id=job.job_id)
        return job
