"""
HTTP clients for the two social platforms the discovery skills read from.

SocialFeedClient talks to the X v2 API (search, mentions, user timelines,
replies). CommunityClient talks to the Moltbook agent community (feed,
comments, verification challenges, member lookups). Both raise
ExternalServiceError on transport failures, rate limits and non-2xx
responses; callers decide whether to skip the candidate or the whole cycle.
"""

import logging

import requests
from bs4 import BeautifulSoup

import config
from errors import ExternalServiceError

logger = logging.getLogger(__name__)


def _raise_for_status(resp, service):
    if resp.status_code == 429:
        raise ExternalServiceError(f"{service} rate limit (429)", code="upstream_rate_limited")
    if resp.status_code >= 400:
        raise ExternalServiceError(f"{service} error {resp.status_code}: {resp.text[:200]}")


def _json(resp, service):
    try:
        return resp.json()
    except ValueError as e:
        raise ExternalServiceError(f"{service} returned invalid JSON") from e


def html_to_text(content):
    """Community posts may carry markup; evaluation only wants the words."""
    if not content:
        return ""
    if "<" not in content:
        return content.strip()
    return BeautifulSoup(content, "html.parser").get_text(" ", strip=True)


# =============================================================================
# X (TWITTER) v2
# =============================================================================

class SocialFeedClient:
    def __init__(self, bearer_token=None, user_token=None, api_base=None, timeout=None, session=None):
        self.bearer_token = bearer_token if bearer_token is not None else config.X_BEARER_TOKEN
        self.user_token = user_token if user_token is not None else config.X_USER_TOKEN
        self.api_base = (api_base or config.X_API_BASE).rstrip("/")
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.session = session or requests.Session()

    @property
    def enabled(self):
        return bool(self.bearer_token)

    def x_headers(self, write=False):
        token = self.user_token if write else self.bearer_token
        return {"Authorization": f"Bearer {token}"}

    def _get(self, path, params):
        try:
            resp = self.session.get(f"{self.api_base}{path}", headers=self.x_headers(),
                                    params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise ExternalServiceError(f"X API unreachable: {e}") from e
        _raise_for_status(resp, "X API")
        return _json(resp, "X API")

    def search(self, query, max_results=50):
        """Recent posts matching query plus their expanded authors: {"posts": [...], "authors": [...]}."""
        data = self._get("/tweets/search/recent", {
            "query": query,
            "tweet.fields": "author_id,created_at",
            "expansions": "author_id",
            "user.fields": "username,description,profile_image_url",
            "max_results": max(10, min(max_results, 100)),
        })
        return {
            "posts": data.get("data") or [],
            "authors": (data.get("includes") or {}).get("users") or [],
        }

    def mentions(self, query, since_id=None, max_results=100):
        """
        Posts newer than since_id matching query, with the fields needed to
        spot reshares: {"posts": [...], "authors": [...]}.
        """
        params = {
            "query": query,
            "tweet.fields": "author_id,created_at,text,referenced_tweets",
            "expansions": "author_id",
            "user.fields": "username",
            "max_results": max(10, min(max_results, 100)),
        }
        if since_id:
            params["since_id"] = since_id
        data = self._get("/tweets/search/recent", params)
        return {
            "posts": data.get("data") or [],
            "authors": (data.get("includes") or {}).get("users") or [],
        }

    def user_recent_posts(self, user_id, max_results=10):
        data = self._get(f"/users/{user_id}/tweets", {
            "max_results": max(5, min(max_results, 100)),
            "tweet.fields": "text,created_at",
        })
        return data.get("data") or []

    def post_update(self, text, reply_to=None):
        """
        Publish a post (optionally as a reply). Returns the new post id.
        Without a user-context token the post is only logged.
        """
        if not self.user_token:
            logger.info("post simulated | reply_to=%s text=%.80s", reply_to, text)
            return None

        payload = {"text": text[:280]}
        if reply_to and str(reply_to).isdigit():
            payload["reply"] = {"in_reply_to_tweet_id": str(reply_to)}
        try:
            resp = self.session.post(f"{self.api_base}/tweets", headers=self.x_headers(write=True),
                                     json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise ExternalServiceError(f"X API unreachable: {e}") from e
        _raise_for_status(resp, "X API")
        post_id = (_json(resp, "X API").get("data") or {}).get("id")
        logger.info("post published | id=%s reply_to=%s", post_id, reply_to)
        return post_id


# =============================================================================
# MOLTBOOK COMMUNITY
# =============================================================================

class CommunityClient:
    def __init__(self, api_key=None, api_base=None, timeout=None, session=None):
        self.api_key = api_key if api_key is not None else config.COMMUNITY_API_KEY
        self.api_base = (api_base or config.COMMUNITY_API_BASE).rstrip("/")
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.session = session or requests.Session()

    @property
    def enabled(self):
        return bool(self.api_key)

    def _headers(self):
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _request(self, method, path, **kwargs):
        try:
            resp = self.session.request(method, f"{self.api_base}{path}", headers=self._headers(),
                                        timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise ExternalServiceError(f"Community API unreachable: {e}") from e
        _raise_for_status(resp, "Community API")
        return _json(resp, "Community API")

    def feed(self, limit=20):
        """Latest posts, with content reduced to plain text."""
        data = self._request("GET", "/feed", params={"limit": limit})
        if not data.get("success"):
            return []
        posts = []
        for post in data.get("posts") or []:
            post = dict(post)
            post["content"] = html_to_text(post.get("content"))
            post["title"] = html_to_text(post.get("title"))
            posts.append(post)
        return posts

    def create_comment(self, post_id, content):
        """
        Returns the raw response, e.g.
        {"success": true, "verification_required": true,
         "verification": {"code": "...", "challenge": "..."}}
        """
        return self._request("POST", f"/posts/{post_id}/comments", json={"content": content})

    def verify(self, code, answer):
        data = self._request("POST", "/verify", json={"verification_code": code, "answer": answer})
        return bool(data.get("success"))

    def user_exists(self, username):
        """True when username has a community profile."""
        try:
            resp = self.session.get(f"{self.api_base}/users/{username}", headers=self._headers(),
                                    timeout=self.timeout)
        except requests.RequestException as e:
            raise ExternalServiceError(f"Community API unreachable: {e}") from e
        if resp.status_code == 404:
            return False
        _raise_for_status(resp, "Community API")
        return True
