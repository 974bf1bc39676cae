"""Platform-specific content shaping before publish. Pure and deterministic."""
from typing import Callable, Dict

ELLIPSIS = "..."
LINKEDIN_MAX_CHARS = 3000
LINKEDIN_DEFAULT_HASHTAGS = "#ContentCreation #SocialMedia #Marketing"
X_MAX_CHARS = 280
FACEBOOK_MAX_CHARS = 63206


def _truncate(content: str, limit: int) -> str:
    if len(content) <= limit:
        return content
    return content[: limit - len(ELLIPSIS)] + ELLIPSIS


def optimize_for_linkedin(content: str) -> str:
    """Cap at 3000 chars; posts without any hashtag get the default set appended."""
    if "#" in content:
        return _truncate(content, LINKEDIN_MAX_CHARS)
    suffix = "\n\n" + LINKEDIN_DEFAULT_HASHTAGS
    return _truncate(content, LINKEDIN_MAX_CHARS - len(suffix)) + suffix


def optimize_for_x(content: str) -> str:
    """Cap at 280 chars, cutting at the last word boundary when there is one."""
    if len(content) <= X_MAX_CHARS:
        return content
    cut = X_MAX_CHARS - len(ELLIPSIS)
    last_space = content.rfind(" ", 0, cut + 1)
    if last_space > 0:
        return content[:last_space] + ELLIPSIS
    return content[:cut] + ELLIPSIS


def optimize_for_facebook(content: str) -> str:
    return _truncate(content, FACEBOOK_MAX_CHARS)


OPTIMIZERS: Dict[str, Callable[[str], str]] = {
    "linkedin": optimize_for_linkedin,
    "x": optimize_for_x,
    "twitter": optimize_for_x,
    "facebook": optimize_for_facebook,
}


def optimize(content: str, platform: str) -> str:
    """Unknown platforms pass through unchanged."""
    fn = OPTIMIZERS.get((platform or "").lower())
    return fn(content) if fn else content
