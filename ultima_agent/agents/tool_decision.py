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
Tool Decision Analyzer for Ultima_Agent
Pure, deterministic classification of a message into a ToolDecision.

Each category (github, jira, knowledge, search) owns a table of weighted patterns;
every matching pattern adds its weight to the category score. The highest score
at or above its activation threshold wins, ties broken by CATEGORY_PRIORITY.
No tool backend or LLM is contacted here.
"""

import re
import math
from typing import Dict, Iterable, List, NamedTuple, Optional, Pattern, Tuple

from ..core.exceptions import ClassificationError
from ..core.models import Complexity, DetectedType, RepoRef, ToolDecision
from ..core.utils import logger

# =============================================================================
# TOOL IDENTIFIERS
# =============================================================================

WEB_SEARCH = "web-search"
WEB_SCRAPER = "web-scraper"
KNOWLEDGE_SEARCH = "knowledge-search"
GITHUB_TOOLS = "github-tools"
JIRA_TOOLS = "jira-tools"

KNOWN_TOOLS = (WEB_SEARCH, WEB_SCRAPER, KNOWLEDGE_SEARCH, GITHUB_TOOLS, JIRA_TOOLS)

CATEGORY_TOOLS: Dict[DetectedType, List[str]] = {
    DetectedType.GITHUB: [GITHUB_TOOLS],
    DetectedType.JIRA: [JIRA_TOOLS],
    DetectedType.KNOWLEDGE: [KNOWLEDGE_SEARCH],
    DetectedType.SEARCH: [WEB_SEARCH],
}

# =============================================================================
# THRESHOLDS
# =============================================================================

GITHUB_ACTIVATION_THRESHOLD = 0.8
JIRA_ACTIVATION_THRESHOLD = 0.8
KNOWLEDGE_ACTIVATION_THRESHOLD = 0.8
SEARCH_ACTIVATION_THRESHOLD = 0.8

ACTIVATION_THRESHOLDS: Dict[DetectedType, float] = {
    DetectedType.GITHUB: GITHUB_ACTIVATION_THRESHOLD,
    DetectedType.JIRA: JIRA_ACTIVATION_THRESHOLD,
    DetectedType.KNOWLEDGE: KNOWLEDGE_ACTIVATION_THRESHOLD,
    DetectedType.SEARCH: SEARCH_ACTIVATION_THRESHOLD,
}

# Earlier wins on equal score
CATEGORY_PRIORITY: Tuple[DetectedType, ...] = (
    DetectedType.GITHUB,
    DetectedType.JIRA,
    DetectedType.KNOWLEDGE,
    DetectedType.SEARCH,
)

CONFIDENCE_CEILING = 0.94
CONFIDENCE_STEEPNESS = 2.5
GENERAL_CONFIDENCE = 0.8

COMPLEX_LENGTH = 200
MODERATE_LENGTH = 50
CONVERSATIONAL_MAX_LENGTH = 100

ESTIMATED_STEPS = {
    Complexity.SIMPLE: 2,
    Complexity.MODERATE: 3,
    Complexity.COMPLEX: 4,
}

COMPLEXITY_KEYWORDS = re.compile(
    r'\b(analy[sz]e|compare|research|investigate|explain in detail|comprehensive|thorough)\b'
)


# =============================================================================
# PATTERN TABLE
# =============================================================================

class PatternRule(NamedTuple):
    pattern: Pattern
    weight: float
    category: DetectedType
    label: str


def _phrases(*phrases: str) -> Pattern:
    return re.compile("|".join(re.escape(p) for p in phrases))


def _words(*words: str) -> Pattern:
    return re.compile(r"\b(?:" + "|".join(re.escape(w) for w in words) + r")\b")


PATTERN_TABLE: Tuple[PatternRule, ...] = (
    # GitHub
    PatternRule(re.compile(r'github\.com/[^/\s]+/[^/\s]+'), 0.95, DetectedType.GITHUB, "github_url"),
    PatternRule(_phrases('github repo', 'repo details', 'github files', 'get repository', 'show me the repo'),
                0.9, DetectedType.GITHUB, "github_repo_phrase"),
    PatternRule(_words('repository'), 0.9, DetectedType.GITHUB, "github_repository"),
    PatternRule(_phrases('commit history', 'latest commits', 'recent commits', 'commits'),
                0.9, DetectedType.GITHUB, "github_commits"),
    PatternRule(_words('github'), 0.5, DetectedType.GITHUB, "github_term"),
    PatternRule(_words('repo'), 0.5, DetectedType.GITHUB, "repo_term"),

    # Jira
    PatternRule(_phrases('retrieve projects', 'list projects', 'get projects', 'show projects',
                         'show my projects', 'what projects', 'my projects', 'project information'),
                0.95, DetectedType.JIRA, "jira_projects"),
    PatternRule(_phrases('search issues', 'find tickets', 'jira issues', 'find bugs', 'show issues', 'list tickets'),
                0.9, DetectedType.JIRA, "jira_issues"),
    PatternRule(_phrases('create ticket', 'create issue', 'new task', 'file a bug', 'create bug', 'new issue'),
                0.9, DetectedType.JIRA, "jira_create"),
    PatternRule(_phrases('jira', 'ticket', 'issue key', 'project key'), 0.8, DetectedType.JIRA, "jira_term"),

    # Knowledge base
    PatternRule(_phrases('search my knowledge', 'find in my documents', 'look in my notes', 'search my files',
                         'my knowledge base', 'what did i save', 'find my notes', 'search internal',
                         'from my uploads', 'in my documents', 'my personal knowledge', 'search my content'),
                0.95, DetectedType.KNOWLEDGE, "knowledge_phrase"),

    # Web search
    PatternRule(_phrases('search the web', 'find online', 'look up current', "what's the latest", 'search for',
                         'find information about', 'google', 'current news', 'latest information', 'research',
                         'find articles', 'web search', 'online search', 'internet search', 'look up'),
                0.9, DetectedType.SEARCH, "search_phrase"),
    PatternRule(_words('my knowledge', 'my documents', 'my notes', 'my files', 'internal'),
                -2.0, DetectedType.SEARCH, "internal_exclusion"),
)

JIRA_ACTION_BY_LABEL = (
    ("jira_projects", "list_projects"),
    ("jira_issues", "search_issues"),
    ("jira_create", "create_issue"),
    ("jira_term", "list_projects"),
)

EXTERNAL_DATA_INDICATORS = (
    'search', 'find', 'look up', 'current', 'latest', 'recent', 'today',
    'github', 'repository', 'repo', 'jira', 'knowledge base', 'my notes',
    'what is', 'who is', 'how to', 'analyze', 'check', 'examine',
    'news', 'information about', 'details about', 'projects'
)

CONVERSATIONAL_PATTERNS = (
    'hello', 'hi', 'hey', 'thanks', 'thank you', 'good morning',
    'good afternoon', 'good evening', 'how are you', 'what can you do',
    'help me', 'explain', 'tell me about programming', 'how does'
)

GITHUB_KEYWORDS = (
    'github', 'repository', 'repo', 'read this repository',
    'examine repository', 'analyze repository', 'github.com'
)

GITHUB_URL_PATTERN = re.compile(r'(?:https?://)?(?:www\.)?github\.com/([^/\s]+)/([^/\s]+)(?:/.*)?', re.IGNORECASE)
GITHUB_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9._-]+$')
TRAILING_PUNCTUATION = '.,;:!?)]}>\'"'


# =============================================================================
# GITHUB HELPERS
# =============================================================================

def parse_github_url(text: str) -> Optional[RepoRef]:
    """
    Extract {owner, repo} from the first github.com URL in text.
    Strips a `.git` suffix, query/fragment and trailing punctuation.
    Returns None when the coordinates contain invalid characters.
    """
    match = GITHUB_URL_PATTERN.search(text or "")
    if not match:
        return None

    owner = match.group(1).rstrip(TRAILING_PUNCTUATION)
    parts = [p for p in re.split(r'[\s?#]', match.group(2)) if p]
    if not parts:
        return None
    repo = parts[0].rstrip(TRAILING_PUNCTUATION)
    repo = re.sub(r'\.git$', '', repo).rstrip(TRAILING_PUNCTUATION)

    if not GITHUB_NAME_PATTERN.match(owner) or not GITHUB_NAME_PATTERN.match(repo):
        return None
    return RepoRef(owner=owner, repo=repo)


def detect_github_request(message: str) -> Tuple[bool, Optional[RepoRef]]:
    """(is_github_request, repo) - repo is set only when a URL was found"""
    repo = parse_github_url(message)
    if repo:
        return True, repo
    lower = (message or "").lower()
    return any(keyword in lower for keyword in GITHUB_KEYWORDS), None


# =============================================================================
# COMPLEXITY
# =============================================================================

def determine_complexity(message: str) -> Complexity:
    lower = message.lower()
    if (
        len(message) > COMPLEX_LENGTH
        or (' and ' in lower and ' also ' in lower)
        or COMPLEXITY_KEYWORDS.search(lower)
        or message.count('?') > 1
    ):
        return Complexity.COMPLEX
    if len(message) > MODERATE_LENGTH:
        return Complexity.MODERATE
    return Complexity.SIMPLE


def requires_external_tools(message: str) -> bool:
    """Loose check whether an unmatched message might still benefit from tools"""
    lower = message.lower()
    if len(lower) < CONVERSATIONAL_MAX_LENGTH and any(re.search(rf'\b{re.escape(p)}\b', lower)
                                                      for p in CONVERSATIONAL_PATTERNS):
        return False
    return any(indicator in lower for indicator in EXTERNAL_DATA_INDICATORS)


def score_to_confidence(score: float) -> float:
    return min(CONFIDENCE_CEILING, 1.0 - math.exp(-CONFIDENCE_STEEPNESS * max(score, 0.0)))


# =============================================================================
# ANALYZER
# =============================================================================

class ToolDecisionAnalyzer:
    """
    Weighted-pattern tool requirement classifier.

    Usage:
        analyzer = ToolDecisionAnalyzer()
        decision = analyzer.analyze("https://github.com/acme/widgets")
    """

    def __init__(self, rules: Iterable[PatternRule] = PATTERN_TABLE):
        self.rules = tuple(rules)

    def score(self, message: str) -> Tuple[Dict[DetectedType, float], Dict[DetectedType, List[str]]]:
        lower = message.lower()
        scores: Dict[DetectedType, float] = {category: 0.0 for category in CATEGORY_PRIORITY}
        matched: Dict[DetectedType, List[str]] = {category: [] for category in CATEGORY_PRIORITY}
        for rule in self.rules:
            if rule.pattern.search(lower):
                scores[rule.category] += rule.weight
                matched[rule.category].append(rule.label)
        return scores, matched

    def analyze(self, message: str, available_tools: Optional[Iterable[str]] = None) -> ToolDecision:
        """
        Classify a message.

        Args:
            message: Raw user message
            available_tools: Tool ids currently registered (None = all built-in tools)

        Raises:
            ClassificationError: message is not a non-empty string
        """
        if not isinstance(message, str):
            raise ClassificationError(f"Message must be a string, got {type(message).__name__}")
        if not message.strip():
            raise ClassificationError("Message is empty")

        available = set(available_tools) if available_tools is not None else set(KNOWN_TOOLS)
        scores, matched = self.score(message)
        complexity = determine_complexity(message)
        estimated_steps = ESTIMATED_STEPS[complexity]
        rounded_scores = {category.value: round(value, 3) for category, value in scores.items()}

        active = [
            category for category in CATEGORY_PRIORITY
            if scores[category] >= ACTIVATION_THRESHOLDS[category]
        ]

        if not active:
            needs_external = requires_external_tools(message)
            decision = ToolDecision(
                should_use_tools=False,
                detected_type=DetectedType.GENERAL,
                reasoning="This appears to be a general question that can be answered with existing knowledge",
                confidence=GENERAL_CONFIDENCE,
                complexity=complexity,
                estimated_steps=estimated_steps,
                fallback_strategy=(
                    "If no tools are used, provide response based on existing knowledge"
                    if needs_external else None
                ),
                scores=rounded_scores,
            )
            logger.info(f"Tool decision: general (external data hint: {needs_external})")
            return decision

        # Stable sort keeps CATEGORY_PRIORITY order for equal scores
        winner = sorted(active, key=lambda category: -scores[category])[0]
        suggested = [tool for tool in CATEGORY_TOOLS[winner] if tool in available]
        confidence = score_to_confidence(scores[winner])
        labels = ", ".join(matched[winner])

        if not suggested:
            logger.warning(f"Tool decision: {winner.value} matched but no backing tool is registered")
            return ToolDecision(
                should_use_tools=False,
                detected_type=DetectedType.NONE,
                reasoning=f"Detected {winner.value} request ({labels}) but the required tool is not available",
                confidence=confidence,
                complexity=complexity,
                estimated_steps=estimated_steps,
                fallback_strategy="Explain that the required tool is not configured and answer from existing knowledge",
                scores=rounded_scores,
            )

        github_repo = parse_github_url(message) if winner == DetectedType.GITHUB else None
        decision = ToolDecision(
            should_use_tools=True,
            detected_type=winner,
            reasoning=f"Detected {winner.value} request (score {scores[winner]:.2f}; matched: {labels})",
            confidence=confidence,
            complexity=complexity,
            suggested_tools=suggested,
            estimated_steps=estimated_steps,
            github_repo=github_repo,
            tool_action=self._tool_action(winner, matched[winner]),
            scores=rounded_scores,
        )
        logger.info(f"Tool decision: {winner.value} -> {suggested} (confidence: {confidence:.2f}, {complexity.value})")
        return decision

    @staticmethod
    def _tool_action(category: DetectedType, labels: List[str]) -> Optional[str]:
        if category == DetectedType.JIRA:
            for label, action in JIRA_ACTION_BY_LABEL:
                if label in labels:
                    return action
        if category == DetectedType.GITHUB:
            return "get_commits" if labels == ["github_commits"] else "get_repository"
        return None


_default_analyzer = ToolDecisionAnalyzer()


def analyze(message: str, available_tools: Optional[Iterable[str]] = None) -> ToolDecision:
    """Module-level shortcut over the default pattern table"""
    return _default_analyzer.analyze(message, available_tools)
