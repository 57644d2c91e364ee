# Ultima Agent: Tool-Using Conversational Agent
# Copyright (C) 2026 Pankaj Varma
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
Web Search & Scraper Tools — Ultima_Agent Live Web Backends

Uses DuckDuckGo (no API key) for search and Trafilatura for clean text extraction.
Scraped pages are hard-truncated to SCRAPE_MAX_CHARS characters.
Both handlers answer with the {success, results|data|error} tool envelope.
"""

import logging
from typing import Any, Dict, List

import trafilatura
from duckduckgo_search import DDGS
from trafilatura.settings import use_config

from ..core.config import Config

logger = logging.getLogger(__name__)

# Browser-like headers prevent 403 Forbidden on many news sites
CUSTOM_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


def web_search(query: str, max_results: int = None) -> List[Dict[str, str]]:
    """
    Search the live web using DuckDuckGo.

    Returns:
        [{'title': str, 'url': str, 'snippet': str}, ...] (empty list when nothing matched)
    """
    max_results = max_results or Config.tools.WEB_SEARCH_MAX_RESULTS
    logger.info(f"[WebSearch] Searching for: '{query}' (max {max_results})")

    with DDGS() as ddgs:
        # ddgs.text returns a generator
        results = list(ddgs.text(query, max_results=max_results))

    structured = []
    for res in results:
        url = res.get("href", "")
        if not url:
            continue
        structured.append({
            "title": res.get("title", "Untitled"),
            "url": url,
            "snippet": res.get("body", "")
        })

    logger.info(f"[WebSearch] Retrieved {len(structured)} result(s)")
    return structured


def _scraper_config():
    config = use_config()
    if not config.has_section("network"):
        config.add_section("network")
    config.set("network", "USER_AGENT", CUSTOM_HEADERS["User-Agent"])
    config.set("network", "MAX_REDIRECTS", "5")
    return config


def scrape_url(url: str, max_chars: int = None) -> Dict[str, Any]:
    """
    Fetch one page and extract its main text.

    Returns:
        {'url': str, 'title': str, 'content': str, 'truncated': bool}
    """
    max_chars = max_chars or Config.tools.SCRAPE_MAX_CHARS
    logger.info(f"[WebScraper] Fetching: {url}")

    config = _scraper_config()
    downloaded = trafilatura.fetch_url(url, config=config)
    if not downloaded:
        raise RuntimeError(f"Could not download {url}")

    text = trafilatura.extract(
        downloaded,
        include_comments=False,
        include_tables=True,
        no_fallback=False,
        config=config
    ) or ""
    metadata = trafilatura.extract_metadata(downloaded)
    title = metadata.title if metadata and metadata.title else url

    return {
        "url": url,
        "title": title,
        "content": text[:max_chars],
        "truncated": len(text) > max_chars
    }


# =============================================================================
# TOOL HANDLERS
# =============================================================================

def web_search_handler(params: Dict[str, Any]) -> Dict[str, Any]:
    query = (params.get("query") or "").strip()
    if not query:
        return {"success": False, "error": "query is required"}
    try:
        results = web_search(query, int(params.get("limit") or Config.tools.WEB_SEARCH_MAX_RESULTS))
    except Exception as e:
        logger.error(f"[WebSearch] Search failed: {e}")
        return {"success": False, "error": f"Web search failed: {e}"}
    return {"success": True, "results": results}


def web_scraper_handler(params: Dict[str, Any]) -> Dict[str, Any]:
    url = (params.get("url") or "").strip()
    if not url:
        return {"success": False, "error": "url is required"}
    try:
        page = scrape_url(url)
    except Exception as e:
        logger.warning(f"[WebScraper] Failed to scrape {url}: {e}")
        return {"success": False, "error": f"Failed to scrape {url}: {e}"}
    return {"success": True, "data": page}
