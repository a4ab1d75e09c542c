"""
Category-partitioned domain blocklist (UT1 layout).

Expected layout::

    blocklist/
        adult/domains
        phishing/domains
        ...

Each ``domains`` file holds one domain per line. A URL is blocked when its
host, or any parent domain of it, appears in a loaded category.
"""

from pathlib import Path
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from common.errors import BlocklistError
from common.logging.logger import get_logger

logger = get_logger("blocklist")

DOMAINS_FILE = "domains"


def registrable_host(url: str) -> Optional[str]:
    """Returns the lowercased host of a URL, or None if it has none."""
    if not url:
        return None
    try:
        host = urlsplit(url.strip()).hostname
    except ValueError:
        return None
    if not host:
        return None
    return host.rstrip(".").lower() or None


def _suffixes(host: str) -> Iterable[str]:
    """a.b.example.com -> a.b.example.com, b.example.com, example.com"""
    labels = host.split(".")
    last = max(len(labels) - 1, 1)
    for i in range(last):
        yield ".".join(labels[i:])


class DomainBlocklist:
    """In-memory domain -> category lookup, immutable after load."""

    def __init__(self, domains: Optional[Dict[str, str]] = None):
        self._domains: Dict[str, str] = dict(domains or {})

    @classmethod
    def load(cls, path: str, categories: Optional[List[str]] = None) -> "DomainBlocklist":
        """
        Loads the blocklist directory.

        Args:
            path: blocklist root directory
            categories: category names to load; all categories when None

        Raises:
            BlocklistError: directory or a requested category is missing
        """
        if path is None:
            raise BlocklistError("<unset>", "a blocklist directory is required")

        root = Path(path)
        if not root.is_dir():
            raise BlocklistError(str(root), "directory not found")

        if categories:
            category_dirs = []
            for name in categories:
                category_dir = root / name
                if not (category_dir / DOMAINS_FILE).is_file():
                    raise BlocklistError(str(root), f"category '{name}' has no {DOMAINS_FILE} file")
                category_dirs.append(category_dir)
        else:
            category_dirs = sorted(
                d for d in root.iterdir() if d.is_dir() and (d / DOMAINS_FILE).is_file()
            )
            if not category_dirs:
                raise BlocklistError(str(root), "no category directories found")

        domains: Dict[str, str] = {}
        for category_dir in category_dirs:
            category = category_dir.name
            count = 0
            try:
                with open(category_dir / DOMAINS_FILE, "r", encoding="utf-8", errors="replace") as f:
                    for line in f:
                        domain = line.strip().lower().rstrip(".")
                        if not domain or domain.startswith("#"):
                            continue
                        domains.setdefault(domain, category)
                        count += 1
            except OSError as e:
                raise BlocklistError(str(category_dir), str(e)) from e
            logger.info(f"Loaded {count} domains for category '{category}'")

        if not domains:
            logger.warning(f"Blocklist at {root} contains no domains")

        return cls(domains)

    def match(self, url: str) -> Optional[str]:
        """Returns the blocking category for a URL, or None."""
        host = registrable_host(url)
        if host is None:
            return None
        for candidate in _suffixes(host):
            category = self._domains.get(candidate)
            if category is not None:
                return category
        return None

    @property
    def categories(self) -> List[str]:
        return sorted(set(self._domains.values()))

    def __len__(self) -> int:
        return len(self._domains)

    def __contains__(self, url: str) -> bool:
        return self.match(url) is not None
