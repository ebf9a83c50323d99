"""
Gender-difference descriptions scraped from Bulbapedia.

Only species on the known gender-difference list are served. Descriptions are
cached per species and refreshed once older than the configured TTL.
"""

import logging
import re
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from bs4 import BeautifulSoup, Tag

from config.settings import BULBAPEDIA_URL, GENDER_DIFF_TTL_DAYS, SCRAPE_REQUEST_TIMEOUT
from utils.api_clients import PokeAPIClient
from utils.constants import GENDER_DIFF_SPECIES, NO_GENDER_DIFFERENCE_TEXT
from utils.database import Database
from utils.errors import PokedexError
from utils.models import GenderDifferenceDescription

logger = logging.getLogger("pokedex.gender")

SECTION_ID = "Gender_differences"
SECTION_TITLE = "gender differences"
HEADING_TAGS = ["h2", "h3"]
CITATION_PATTERN = re.compile(r"\[\d+\]")


def bulbapedia_title(name: str) -> str:
    """`mr-mime` -> `Mr_Mime`."""
    segments = [s for s in re.split(r"[-_ ]+", name) if s]
    return "_".join(s[:1].upper() + s[1:] for s in segments)


def candidate_urls(name: str, base_url: str = BULBAPEDIA_URL) -> List[str]:
    title = bulbapedia_title(name.lower())
    return [f"{base_url}/{title}_(Pok%C3%A9mon)", f"{base_url}/{title}"]


def _is_section_break(node: Tag) -> bool:
    if node.name in HEADING_TAGS:
        return True
    # Newer MediaWiki wraps headings in <div class="mw-heading">
    return node.name == "div" and "mw-heading" in (node.get("class") or [])


def _section_start(soup: BeautifulSoup) -> Optional[Tag]:
    anchor = soup.find(id=SECTION_ID)
    heading = None
    if anchor is not None:
        heading = anchor if anchor.name in HEADING_TAGS else anchor.find_parent(HEADING_TAGS)
    if heading is None:
        heading = next(
            (
                h
                for h in soup.find_all(HEADING_TAGS)
                if h.get_text(" ", strip=True).lower() == SECTION_TITLE
            ),
            None,
        )
    if heading is None:
        return None

    wrapper = heading.parent
    if isinstance(wrapper, Tag) and _is_section_break(wrapper) and wrapper.name == "div":
        return wrapper
    return heading


def _clean_paragraph(text: str) -> str:
    text = CITATION_PATTERN.sub("", text)
    return " ".join(text.split())


def extract_gender_differences(html: str) -> Optional[str]:
    """
    Text of the paragraphs under the "Gender differences" heading, up to the
    next h2/h3. Returns None when the page has no such section or it holds
    no prose.
    """
    soup = BeautifulSoup(html, "html.parser")
    start = _section_start(soup)
    if start is None:
        return None

    paragraphs: List[str] = []
    for node in start.next_siblings:
        if not isinstance(node, Tag):
            continue
        if _is_section_break(node):
            break
        found = [node] if node.name == "p" else node.find_all("p")
        for p in found:
            text = _clean_paragraph(p.get_text(" "))
            if text:
                paragraphs.append(text)

    combined = "\n\n".join(paragraphs).strip()
    return combined or None


class GenderDifferenceService:
    """
    Cache-aside access to gender-difference descriptions.

    Args:
        client: Used for the HTML fetches (retry and circuit breaker apply).
        db: Cache store.
        ttl_days: Age after which a cached description is refetched.
        species: Names eligible for lookup.
        clock: Epoch-seconds source.
    """

    def __init__(
        self,
        client: PokeAPIClient,
        db: Database,
        ttl_days: float = GENDER_DIFF_TTL_DAYS,
        species: Optional[Iterable[str]] = None,
        base_url: str = BULBAPEDIA_URL,
        timeout: float = SCRAPE_REQUEST_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.db = db
        self.ttl_seconds = ttl_days * 86400
        self.species = {s.lower() for s in (species if species is not None else GENDER_DIFF_SPECIES)}
        self.base_url = base_url
        self.timeout = timeout
        self.clock = clock

    def is_supported(self, name: str) -> bool:
        return name.lower() in self.species

    def is_fresh(self, record: GenderDifferenceDescription) -> bool:
        return self.clock() - (record.fetched_at or 0) < self.ttl_seconds

    async def get(self, dex_id: int, name: str) -> Optional[Dict[str, Any]]:
        """
        Description for a species.

        Returns:
            `{name, dexId, description, sourceUrl, cached}`, or None for a
            species without documented gender differences.
        """
        name = name.strip().lower()
        if not self.is_supported(name):
            return None

        cached = await self.db.get_gender_difference(pokemon_id=dex_id, name=name)
        if cached is not None and self.is_fresh(cached):
            logger.debug(f"Gender difference cache hit for {name}")
            return self._response(dex_id, cached, cached=True)

        record = await self.scrape(dex_id, name)
        return self._response(dex_id, record, cached=False)

    async def scrape(self, dex_id: int, name: str) -> GenderDifferenceDescription:
        """
        Try each candidate page in turn. The first page that loads is used,
        whether or not it has the section; if none loads the fallback text
        is returned without being stored.
        """
        urls = candidate_urls(name, self.base_url)
        for url in urls:
            try:
                html = await self.client.fetch_text(url, timeout=self.timeout)
            except PokedexError as e:
                logger.warning(f"Gender difference page {url} unavailable: {e}")
                continue

            description = extract_gender_differences(html) or NO_GENDER_DIFFERENCE_TEXT
            record = GenderDifferenceDescription(
                pokemon_id=dex_id,
                name=name,
                description=description,
                fetched_at=self.clock(),
                source_url=url,
            )
            try:
                await self.db.upsert_gender_difference(record)
            except Exception as e:
                logger.error(f"Failed to cache gender difference for {name}: {e}", exc_info=True)
            return record

        logger.info(f"No gender difference page reachable for {name}")
        return GenderDifferenceDescription(
            pokemon_id=dex_id,
            name=name,
            description=NO_GENDER_DIFFERENCE_TEXT,
            fetched_at=self.clock(),
            source_url=urls[0],
        )

    @staticmethod
    def _response(
        dex_id: int, record: GenderDifferenceDescription, cached: bool
    ) -> Dict[str, Any]:
        return {
            "name": record.name,
            "dexId": dex_id,
            "description": record.description,
            "sourceUrl": record.source_url,
            "cached": cached,
        }
