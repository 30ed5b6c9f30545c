"""
Image digest lookup and comparison.
"""

import logging

import requests

from containers import sanitize

logger = logging.getLogger(__name__)


def image_digest(docker, image: str) -> str:
    """Return the content digest of a local image.

    Prefers the first registry digest recorded against the image (a tag can
    carry several); falls back to the local image id for images that were
    built locally or never pulled.
    """
    info = docker.inspect_image(image)
    repo_digests = info.get('RepoDigests') or []
    if repo_digests:
        return repo_digests[0]
    return info.get('Id', '')


def current_digest(docker, image: str) -> str:
    """Digest before a pull, or "" when it cannot be determined.

    An unknown digest forces an update attempt instead of a silent skip.
    """
    try:
        return image_digest(docker, image)
    except requests.RequestException as e:
        logger.warning(f"Failed to get current digest for {sanitize(image)}: {sanitize(str(e))}")
        return ""


def digest_changed(old_digest: str, new_digest: str) -> bool:
    """Plain inequality. An unknown ("") old digest against a known new one counts as changed."""
    return old_digest != new_digest


def truncate_digest(digest: str) -> str:
    """Shorten a digest for logs and notifications."""
    if len(digest) > 19:
        return digest[:19] + "..."
    return digest
