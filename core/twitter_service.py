# Twitter/X proof source
# Looks up posted tweets so the verification job can check proof of work.

import logging
from typing import List, Optional

import requests
import tweepy
from pydantic import BaseModel

from config.app_config import TWITTER_BEARER_TOKEN, TWITTER_REQUEST_TIMEOUT_SECONDS
from services.exceptions import ProofSourceError

logger = logging.getLogger(__name__)

TWEET_FIELDS = ["author_id", "created_at", "text"]


class Post(BaseModel):
    id: str
    author_id: str
    text: str = ""


class TimeoutSession(requests.Session):
    """requests.Session that applies a default timeout; tweepy.Client sets none."""

    def __init__(self, timeout: float):
        super().__init__()
        self.timeout = timeout

    def request(self, method, url, **kwargs):
        kwargs.setdefault("timeout", self.timeout)
        return super().request(method, url, **kwargs)


class TwitterProofSource:
    """
    Read-only Twitter API v2 client.

    Every transport, rate-limit or payload problem is raised as
    ProofSourceError so the verification job is retried instead of failed.
    A tweet that does not exist is reported as None.
    """

    def __init__(self, bearer_token: Optional[str] = None, client: Optional[tweepy.Client] = None,
                 timeout: Optional[float] = None):
        if client is None:
            token = bearer_token if bearer_token is not None else TWITTER_BEARER_TOKEN
            if not token:
                logger.warning("TWITTER_BEARER_TOKEN missing. Tweet lookups will fail until it is set.")
            client = tweepy.Client(bearer_token=token, wait_on_rate_limit=False)
            client.session = TimeoutSession(timeout or TWITTER_REQUEST_TIMEOUT_SECONDS)
        self.client = client

    def get_post(self, post_id: str) -> Optional[Post]:
        """Fetch one tweet by id, or None if it does not exist."""
        try:
            response = self.client.get_tweet(post_id, tweet_fields=TWEET_FIELDS, user_auth=False)
        except tweepy.errors.NotFound:
            return None
        except (tweepy.errors.TweepyException, requests.exceptions.RequestException) as e:
            logger.error(f"Twitter API error fetching tweet {post_id}: {e}")
            raise ProofSourceError(f"Twitter API error: {e}") from e

        if response.data is None:
            if response.errors and not _all_not_found(response.errors):
                raise ProofSourceError(f"Twitter API returned errors for tweet {post_id}: {response.errors}")
            return None
        return _to_post(response.data)

    def search_posts(self, query: str, max_results: int = 10) -> List[Post]:
        """Recent tweets matching a search query."""
        try:
            response = self.client.search_recent_tweets(
                query,
                tweet_fields=TWEET_FIELDS,
                max_results=max(10, min(max_results, 100)),
                user_auth=False,
            )
        except (tweepy.errors.TweepyException, requests.exceptions.RequestException) as e:
            logger.error(f"Twitter API error searching '{query}': {e}")
            raise ProofSourceError(f"Twitter API error: {e}") from e

        return [_to_post(tweet) for tweet in (response.data or [])][:max_results]

    def get_user_id(self, username: str) -> Optional[str]:
        """Resolve a handle to the numeric user id used as verified_author_id."""
        try:
            response = self.client.get_user(username=username.lstrip("@"), user_auth=False)
        except tweepy.errors.NotFound:
            return None
        except (tweepy.errors.TweepyException, requests.exceptions.RequestException) as e:
            logger.error(f"Twitter API error resolving @{username}: {e}")
            raise ProofSourceError(f"Twitter API error: {e}") from e

        if response.data is None:
            return None
        return str(response.data.id)


def _all_not_found(errors) -> bool:
    for error in errors:
        kind = str(error.get("type", "")) if isinstance(error, dict) else ""
        if not kind.endswith("/resource-not-found"):
            return False
    return True


def _to_post(tweet) -> Post:
    tweet_id = getattr(tweet, "id", None)
    author_id = getattr(tweet, "author_id", None)
    if tweet_id is None or author_id is None:
        raise ProofSourceError("Malformed tweet payload: missing id or author_id")
    return Post(id=str(tweet_id), author_id=str(author_id), text=getattr(tweet, "text", None) or "")


def get_proof_source() -> TwitterProofSource:
    return TwitterProofSource()
