"""
Twitter/X adapter.
Implements OAuth 2.0 with PKCE and the v2 tweets API.
"""

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
from services.pkce import code_challenge_for, generate_code_verifier

TWITTER_AUTH_URL = "https://twitter.com/i/oauth2/authorize"
TWITTER_TOKEN_URL = "https://api.x.com/2/oauth2/token"
TWITTER_API_BASE = "https://api.x.com/2"
TWITTER_WEB_STATUS_URL = "https://x.com/i/web/status"
TWITTER_MEDIA_UPLOAD_URL = "https://upload.twitter.com/1.1/media/upload.json"

SCOPES = ("tweet.read", "tweet.write", "users.read", "offline.access")
METRIC_FIELDS = "public_metrics,non_public_metrics,organic_metrics"


def _optional_int(source: Dict[str, Any], key: str) -> Optional[int]:
    value = source.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class TwitterAdapter(BasePlatformAdapter):
    platform = Platform.TWITTER
    requires_pkce = True
    issues_refresh_tokens = True

    def get_auth_url(self, state: str, redirect_uri: str) -> AuthorizationRequest:
        self._require_client_credentials()
        verifier = generate_code_verifier()
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(SCOPES),
            "state": state,
            "code_challenge": code_challenge_for(verifier),
            "code_challenge_method": "S256",
        }
        return AuthorizationRequest(
            url=f"{TWITTER_AUTH_URL}?{urlencode(params, quote_via=quote)}",
            code_verifier=verifier,
        )

    async def exchange_code_for_tokens(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenBundle:
        self._require_client_credentials()
        if not code_verifier:
            raise TokenExchangeError("Token exchange failed: PKCE code_verifier is required for twitter")

        response = await self._request(
            "POST",
            TWITTER_TOKEN_URL,
            failure_message="Token exchange failed",
            error_cls=TokenExchangeError,
            auth=(self.client_id, self.client_secret),
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
                "client_id": self.client_id,
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
                TWITTER_TOKEN_URL,
                failure_message="Token refresh failed",
                auth=(self.client_id, self.client_secret),
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.client_id,
                },
            )
        except PlatformRequestError as exc:
            # invalid_grant comes back as 400; 401 means the app credentials were rejected
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
            f"{TWITTER_API_BASE}/users/me",
            failure_message="Failed to fetch current user",
            params={"user.fields": "profile_image_url"},
            headers=self._bearer(access_token),
        )
        data = self._json(response, "Failed to fetch current user").get("data") or {}
        return PlatformUser(
            platform_user_id=str(data.get("id", "")),
            username=str(data.get("username", "")),
            display_name=data.get("name"),
            avatar_url=data.get("profile_image_url"),
        )

    async def publish(self, access_token: str, content: PostContent) -> PublishedPost:
        body: Dict[str, Any] = {"text": content.text}
        if content.reply_to_id:
            body["reply"] = {"in_reply_to_tweet_id": content.reply_to_id}
        if content.media_ids:
            body["media"] = {"media_ids": list(content.media_ids)}

        response = await self._request(
            "POST",
            f"{TWITTER_API_BASE}/tweets",
            failure_message="Publish failed",
            json=body,
            headers=self._bearer(access_token),
        )
        tweet_id = str((self._json(response, "Publish failed").get("data") or {}).get("id", ""))
        if not tweet_id:
            raise PlatformRequestError("Publish failed: response did not include a tweet id")
        return PublishedPost(
            platform_post_id=tweet_id,
            platform_url=f"{TWITTER_WEB_STATUS_URL}/{tweet_id}",
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
        """Chunked INIT, APPEND, FINALIZE upload; the whole image goes in one segment."""
        headers = self._bearer(access_token)
        init = await self._request(
            "POST",
            TWITTER_MEDIA_UPLOAD_URL,
            failure_message="Media INIT failed",
            data={"command": "INIT", "total_bytes": str(len(data)), "media_type": mime_type},
            headers=headers,
        )
        media_id = str(self._json(init, "Media INIT failed").get("media_id_string") or "")
        if not media_id:
            raise PlatformRequestError("Media INIT failed: response did not include media_id_string")

        await self._request(
            "POST",
            TWITTER_MEDIA_UPLOAD_URL,
            failure_message="Media APPEND failed",
            data={"command": "APPEND", "media_id": media_id, "segment_index": "0"},
            files={"media": ("media", data, mime_type)},
            headers=headers,
        )
        finalize = await self._request(
            "POST",
            TWITTER_MEDIA_UPLOAD_URL,
            failure_message="Media FINALIZE failed",
            data={"command": "FINALIZE", "media_id": media_id},
            headers=headers,
        )
        return str(self._json(finalize, "Media FINALIZE failed").get("media_id_string") or media_id)

    async def delete_post(self, access_token: str, platform_post_id: str) -> None:
        await self._request(
            "DELETE",
            f"{TWITTER_API_BASE}/tweets/{quote(platform_post_id, safe='')}",
            failure_message="Delete failed",
            headers=self._bearer(access_token),
        )

    async def fetch_post_metrics(self, access_token: str, platform_post_id: str) -> MetricsObservation:
        response = await self._request(
            "GET",
            f"{TWITTER_API_BASE}/tweets/{quote(platform_post_id, safe='')}",
            failure_message="Fetch metrics failed",
            params={"tweet.fields": METRIC_FIELDS},
            headers=self._bearer(access_token),
        )
        data = self._json(response, "Fetch metrics failed").get("data") or {}
        public_metrics = data.get("public_metrics") or {}
        non_public_metrics = data.get("non_public_metrics") or {}

        return MetricsObservation(
            observed_at=datetime.now(timezone.utc),
            impressions=_optional_int(public_metrics, "impression_count"),
            likes=_optional_int(public_metrics, "like_count"),
            replies=_optional_int(public_metrics, "reply_count"),
            reposts=_optional_int(public_metrics, "retweet_count"),
            clicks=_optional_int(non_public_metrics, "url_link_clicks"),
            profile_visits=_optional_int(non_public_metrics, "user_profile_clicks"),
            follows_from_post=None,
        )

    async def repost(self, access_token: str, platform_user_id: str, platform_post_id: str) -> None:
        """Retweet ``platform_post_id`` as ``platform_user_id``."""
        await self._request(
            "POST",
            f"{TWITTER_API_BASE}/users/{quote(platform_user_id, safe='')}/retweets",
            failure_message="Repost failed",
            json={"tweet_id": platform_post_id},
            headers=self._bearer(access_token),
        )

    async def unrepost(self, access_token: str, platform_user_id: str, platform_post_id: str) -> None:
        await self._request(
            "DELETE",
            f"{TWITTER_API_BASE}/users/{quote(platform_user_id, safe='')}/retweets/"
            f"{quote(platform_post_id, safe='')}",
            failure_message="Unrepost failed",
            headers=self._bearer(access_token),
        )
