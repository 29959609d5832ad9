"""LinkedIn adapter (OpenID sign-in, REST posts and social metadata APIs)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

from services.connectors.base import BasePlatformAdapter
from services.connectors.types import (
    AuthorizationRequest,
    MetricsObservation,
    Platform,
    PlatformUser,
    PostContent,
    PublishedPost,
    TokenBundle,
)
from services.errors import PlatformRequestError, TokenExchangeError, TokenRefreshError

LINKEDIN_AUTH_URL = "https://www.linkedin.com/oauth/v2/authorization"
LINKEDIN_TOKEN_URL = "https://www.linkedin.com/oauth/v2/accessToken"
LINKEDIN_USERINFO_URL = "https://api.linkedin.com/v2/userinfo"
LINKEDIN_POSTS_URL = "https://api.linkedin.com/rest/posts"
LINKEDIN_SOCIAL_METADATA_URL = "https://api.linkedin.com/rest/socialMetadata"
LINKEDIN_IMAGES_URL = "https://api.linkedin.com/rest/images"
LINKEDIN_FEED_URL = "https://www.linkedin.com/feed/update"
LINKEDIN_VERSION = "202601"

SCOPES = ("openid", "profile", "email", "w_member_social", "r_member_postAnalytics")


def _person_urn(author_id: Optional[str]) -> str:
    if not author_id:
        raise PlatformRequestError("Publish failed: LinkedIn posts require an author id")
    return author_id if author_id.startswith("urn:") else f"urn:li:person:{author_id}"


class LinkedInAdapter(BasePlatformAdapter):
    platform = Platform.LINKEDIN
    requires_pkce = False
    # Refresh tokens are only granted to partner apps.
    issues_refresh_tokens = False

    @staticmethod
    def _version_headers() -> Dict[str, str]:
        return {
            "LinkedIn-Version": LINKEDIN_VERSION,
            "X-Restli-Protocol-Version": "2.0.0",
        }

    def get_auth_url(self, state: str, redirect_uri: str) -> AuthorizationRequest:
        self._require_client_credentials()
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(SCOPES),
            "state": state,
        }
        return AuthorizationRequest(url=f"{LINKEDIN_AUTH_URL}?{urlencode(params, quote_via=quote)}")

    async def exchange_code_for_tokens(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenBundle:
        self._require_client_credentials()
        response = await self._request(
            "POST",
            LINKEDIN_TOKEN_URL,
            failure_message="Token exchange failed",
            error_cls=TokenExchangeError,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        return self._token_bundle(
            self._json(response, "Token exchange failed", TokenExchangeError),
            TokenExchangeError,
        )

    async def refresh_tokens(self, refresh_token: str) -> TokenBundle:
        self._require_client_credentials()
        try:
            response = await self._request(
                "POST",
                LINKEDIN_TOKEN_URL,
                failure_message="Token refresh failed",
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
        except PlatformRequestError as exc:
            if exc.status_code in (400, 401):
                raise TokenRefreshError(str(exc)) from exc
            raise
        return self._token_bundle(
            self._json(response, "Token refresh failed", TokenRefreshError),
            TokenRefreshError,
        )

    async def get_current_user(self, access_token: str) -> PlatformUser:
        response = await self._request(
            "GET",
            LINKEDIN_USERINFO_URL,
            failure_message="Failed to fetch current user",
            headers=self._bearer(access_token),
        )
        payload = self._json(response, "Failed to fetch current user")
        name = payload.get("name")
        return PlatformUser(
            platform_user_id=str(payload.get("sub", "")),
            username=str(name or payload.get("email") or payload.get("sub", "")),
            display_name=name,
            avatar_url=payload.get("picture"),
        )

    async def publish(self, access_token: str, content: PostContent) -> PublishedPost:
        body: Dict[str, Any] = {
            "author": _person_urn(content.author_id),
            "commentary": content.text,
            "visibility": "PUBLIC",
            "distribution": {
                "feedDistribution": "MAIN_FEED",
                "targetEntities": [],
                "thirdPartyDistributionChannels": [],
            },
            "lifecycleState": "PUBLISHED",
        }
        if len(content.media_ids) == 1:
            body["content"] = {"media": {"id": content.media_ids[0]}}
        elif content.media_ids:
            body["content"] = {"multiImage": {"images": [{"id": media_id} for media_id in content.media_ids]}}

        response = await self._request(
            "POST",
            LINKEDIN_POSTS_URL,
            failure_message="Publish failed",
            json=body,
            headers={**self._bearer(access_token), **self._version_headers()},
        )
        post_urn = response.headers.get("x-restli-id", "")
        if not post_urn:
            raise PlatformRequestError("Publish failed: response did not include x-restli-id")
        return PublishedPost(
            platform_post_id=post_urn,
            platform_url=f"{LINKEDIN_FEED_URL}/{post_urn}",
            published_at=datetime.now(timezone.utc),
        )

    async def upload_media(
        self,
        access_token: str,
        data: bytes,
        mime_type: str,
        *,
        author_id: Optional[str] = None,
    ) -> str:
        init = await self._request(
            "POST",
            LINKEDIN_IMAGES_URL,
            failure_message="Image upload init failed",
            params={"action": "initializeUpload"},
            json={"initializeUploadRequest": {"owner": _person_urn(author_id)}},
            headers={**self._bearer(access_token), **self._version_headers()},
        )
        value = self._json(init, "Image upload init failed").get("value") or {}
        upload_url = value.get("uploadUrl")
        image_urn = value.get("image")
        if not upload_url or not image_urn:
            raise PlatformRequestError("Image upload init failed: response did not include uploadUrl and image")

        await self._request(
            "PUT",
            upload_url,
            failure_message="Image upload PUT failed",
            content=data,
            headers={**self._bearer(access_token), "Content-Type": mime_type},
        )
        return str(image_urn)

    async def delete_post(self, access_token: str, platform_post_id: str) -> None:
        await self._request(
            "DELETE",
            f"{LINKEDIN_POSTS_URL}/{quote(platform_post_id, safe='')}",
            failure_message="Delete failed",
            headers={**self._bearer(access_token), **self._version_headers()},
        )

    async def fetch_post_metrics(self, access_token: str, platform_post_id: str) -> MetricsObservation:
        response = await self._request(
            "GET",
            f"{LINKEDIN_SOCIAL_METADATA_URL}/{quote(platform_post_id, safe='')}",
            failure_message="Fetch metrics failed",
            headers={**self._bearer(access_token), **self._version_headers()},
        )
        payload = self._json(response, "Fetch metrics failed")

        likes = 0
        for summary in payload.get("reactionSummaries") or []:
            if summary.get("reactionType") == "LIKE":
                likes = int(summary.get("count") or 0)

        # socialMetadata exposes no impression, click or profile-visit counters
        return MetricsObservation(
            observed_at=datetime.now(timezone.utc),
            impressions=None,
            likes=likes,
            replies=int((payload.get("commentSummary") or {}).get("count") or 0),
            reposts=int((payload.get("shareSummary") or {}).get("count") or 0),
            clicks=None,
            profile_visits=None,
            follows_from_post=None,
        )
