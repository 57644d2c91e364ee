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
Utility Functions for Ultima_Agent
Common utilities including logging, identifiers, timing, and text processing.
"""

import re
import uuid
import random
import string
import logging
from typing import List, Optional, Any
from datetime import datetime, timezone

# =============================================================================
# LOGGING SETUP
# =============================================================================

def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Configure logging for the application"""
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Silence noisy third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("trafilatura").setLevel(logging.ERROR)

    return logging.getLogger('Ultima_Agent')


logger = setup_logging()


# =============================================================================
# IDENTIFIERS & TIMESTAMPS
# =============================================================================

def utc_now() -> datetime:
    """Timezone-aware UTC timestamp"""
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def new_id() -> str:
    """Random UUID4 string used for nodes, chunks and messages"""
    return str(uuid.uuid4())


def new_progress_id() -> str:
    """Progress identifier in the form tool-<epoch ms>-<9 random chars>"""
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"tool-{int(utc_now().timestamp() * 1000)}-{suffix}"


# =============================================================================
# TEXT PROCESSING UTILITIES
# =============================================================================

WORD_PATTERN = re.compile(r"\w[\w.-]*")


def tokenize_simple(text: str) -> List[str]:
    """Casefolded (Unicode) word tokens with surrounding punctuation removed"""
    return [t.strip('._-') for t in WORD_PATTERN.findall(text.casefold()) if t.strip('._-')]


def truncate_text(text: str, max_length: int = 500, suffix: str = "...") -> str:
    """Truncate text to max length with suffix"""
    if len(text) <= max_length:
        return text
    return text[:max_length] + suffix


def strip_thinking(text: str) -> str:
    """Remove <thinking> blocks emitted by reasoning prompts"""
    return re.sub(r'<thinking>[\s\S]*?</thinking>', '', text or '').strip()


def title_case_tool_name(function_name: str) -> str:
    """execute_web-search -> Web-Search, execute_github_tools -> Github Tools"""
    name = function_name.replace('execute_', '', 1).replace('_', ' ')
    return re.sub(r'\b\w', lambda m: m.group().upper(), name)


def is_empty_payload(result: Any) -> bool:
    """
    Type-specific emptiness check for a tool payload.
    Empty: falsy value, zero `total`, empty `issues` / `results` field, empty list.
    """
    if not result:
        return True
    if isinstance(result, dict):
        if result.get('total') == 0:
            return True
        if 'issues' in result and isinstance(result['issues'], list) and not result['issues']:
            return True
        if 'results' in result and isinstance(result['results'], list) and not result['results']:
            return True
    return False


# =============================================================================
# TIMING UTILITIES
# =============================================================================

class Timer:
    """Context manager for timing operations"""

    def __init__(self, name: str = "Operation"):
        self.name = name
        self.start_time: Optional[datetime] = None
        self.elapsed_ms: float = 0.0

    def __enter__(self):
        self.start_time = datetime.now()
        return self

    def __exit__(self, *args):
        elapsed = datetime.now() - self.start_time
        self.elapsed_ms = elapsed.total_seconds() * 1000
        logger.debug(f"{self.name} completed in {self.elapsed_ms:.2f}ms")
