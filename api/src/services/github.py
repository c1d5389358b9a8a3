"""
GitHub service for webhook validation and payload parsing.
"""

import hmac
import hashlib
from typing import Dict, Any

from api.src.config import get_settings

settings = get_settings()

def verify_signature(payload: bytes, signature: str) -> bool:
    """Verify GitHub webhook signature."""
    if not settings.github_webhook_secret:
        # Skip verification if no secret configured (development)
        return True

    expected = "sha256=" + hmac.new(
        settings.github_webhook_secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature)

def parse_webhook_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Extract relevant info from GitHub webhook payload."""
    repo = payload.get("repository") or {}
    head_commit = payload.get("head_commit") or {}

    # Get branch from ref (refs/heads/main -> main)
    ref = payload.get("ref", "")
    branch = ref.replace("refs/heads/", "", 1) if ref.startswith("refs/heads/") else ref

    return {
        "repo_name": repo.get("name", ""),
        "repo_full_name": repo.get("full_name", ""),
        "clone_url": repo.get("clone_url", ""),
        "commit_sha": head_commit.get("id", payload.get("after", "")),
        "ref": ref,
        "branch": branch,
        "commit_message": head_commit.get("message", ""),
        "pusher": (payload.get("pusher") or {}).get("name", ""),
    }
