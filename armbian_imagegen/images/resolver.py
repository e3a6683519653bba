"""Remote archive resolver.

This module handles:
- Board-name variant generation for the Armbian download server
- Directory listing fetches with manual redirect-chain handling
- Filtering and ranking of candidate image archives
"""

from __future__ import annotations

import logging
import re
from urllib.parse import urljoin

import httpx

from armbian_imagegen.errors import ImageNotFound, NetworkFailure

logger = logging.getLogger(__name__)

ARMBIAN_DOWNLOAD_BASE = "https://dl.armbian.com"

IMAGE_SUFFIX = ".img.xz"

MAX_REDIRECTS = 10

# Timeout for listing requests (seconds)
LISTING_TIMEOUT = 30

DESKTOP_MARKERS = (
    "desktop",
    "gnome",
    "xfce",
    "kde",
    "cinnamon",
    "mate",
    "budgie",
    "lxde",
)

_HREF_PATTERN = re.compile(
    r'href="([^"]+' + re.escape(IMAGE_SUFFIX) + r')"', re.IGNORECASE
)


def board_name_variants(board_name: str) -> list[str]:
    """Return the spellings of a board name to try, de-duplicated in order.

    Args:
        board_name: Board name as configured (e.g., 'Rock 5B').

    Returns:
        Candidate directory names on the download server.
    """
    lower = board_name.lower()
    candidates = [
        board_name,
        lower,
        re.sub(r"[^a-z0-9]", "-", lower),
        re.sub(r"[^a-z0-9]", "", lower),
        lower.replace("-", "_"),
        board_name[:1].upper() + board_name[1:].lower(),
    ]
    variants: list[str] = []
    for candidate in candidates:
        if candidate and candidate not in variants:
            variants.append(candidate)
    return variants


def fetch_listing(client: httpx.Client, url: str) -> str | None:
    """Fetch a directory listing, following redirects by hand.

    Every hop of a redirect chain is followed, resolving relative Location
    headers against the current URL.

    Args:
        client: HTTPX client instance (redirect following is disabled per
            request).
        url: Listing URL.

    Returns:
        Listing HTML, or None if the listing does not exist or the redirect
        limit was exceeded.

    Raises:
        NetworkFailure: On timeouts and connection errors.
    """
    current = url
    for _ in range(MAX_REDIRECTS + 1):
        try:
            response = client.get(
                current, follow_redirects=False, timeout=LISTING_TIMEOUT
            )
        except httpx.TimeoutException as e:
            raise NetworkFailure(f"Timeout fetching {current}", code="timeout") from e
        except httpx.RequestError as e:
            raise NetworkFailure(f"Network error fetching {current}: {e}") from e

        if response.is_redirect:
            location = response.headers.get("location")
            if not location:
                logger.debug("Redirect without Location from %s", current)
                return None
            current = urljoin(current, location)
            logger.debug("Following redirect to %s", current)
            continue

        if response.status_code != 200:
            logger.debug("Listing %s returned %d", current, response.status_code)
            return None
        return response.text

    logger.warning("Too many redirects while fetching %s", url)
    return None


def _matches_type(filename: str, image_type: str, desktop: str | None) -> bool:
    name = filename.lower()
    if image_type == "minimal":
        return "minimal" in name
    if image_type == "desktop":
        if desktop:
            return desktop.lower() in name
        return any(marker in name for marker in DESKTOP_MARKERS)
    # server / cli
    return "minimal" not in name and not any(marker in name for marker in DESKTOP_MARKERS)


def select_image(
    listing: str,
    release: str,
    image_type: str,
    desktop: str | None = None,
) -> str | None:
    """Pick the best matching archive filename from a listing page.

    Args:
        listing: Listing HTML.
        release: Release codename, matched as a case-insensitive substring.
        image_type: 'minimal', 'desktop' or 'server'.
        desktop: Desktop environment substring for desktop images.

    Returns:
        The matching href, highest-sorting first, or None.
    """
    hrefs = set(_HREF_PATTERN.findall(listing))
    release_lower = release.lower()
    candidates = [
        href
        for href in hrefs
        if release_lower in href.rsplit("/", 1)[-1].lower()
        and _matches_type(href.rsplit("/", 1)[-1], image_type, desktop)
    ]
    if not candidates:
        return None
    # Filenames embed the Armbian version, so lexical order approximates recency
    candidates.sort(reverse=True)
    return candidates[0]


def resolve_image_url(
    client: httpx.Client,
    board_name: str,
    release: str,
    image_type: str,
    desktop: str | None = None,
    base_url: str = ARMBIAN_DOWNLOAD_BASE,
) -> str:
    """Resolve the download URL of a base image.

    Args:
        client: HTTPX client instance.
        board_name: Board name.
        release: Release codename (e.g., 'bookworm').
        image_type: 'minimal', 'desktop' or 'server'.
        desktop: Optional desktop environment for desktop images.
        base_url: Archive base URL.

    Returns:
        Absolute URL of the newest matching archive.

    Raises:
        ImageNotFound: If no board-name variant yields a match.
        NetworkFailure: If no listing could be fetched because of network
            errors.
    """
    base = base_url.rstrip("/")
    last_network_error: NetworkFailure | None = None
    any_listing = False

    for variant in board_name_variants(board_name):
        listing_url = f"{base}/{variant}/archive/"
        try:
            listing = fetch_listing(client, listing_url)
        except NetworkFailure as e:
            logger.warning("Could not fetch %s: %s", listing_url, e.message)
            last_network_error = e
            continue
        any_listing = True
        if listing is None:
            continue

        href = select_image(listing, release, image_type, desktop)
        if href is not None:
            url = urljoin(listing_url, href)
            logger.info("Resolved %s/%s/%s to %s", board_name, release, image_type, url)
            return url

    if not any_listing and last_network_error is not None:
        raise last_network_error
    raise ImageNotFound(board_name, release, image_type)


__all__ = [
    "ARMBIAN_DOWNLOAD_BASE",
    "DESKTOP_MARKERS",
    "IMAGE_SUFFIX",
    "MAX_REDIRECTS",
    "board_name_variants",
    "fetch_listing",
    "resolve_image_url",
    "select_image",
]
