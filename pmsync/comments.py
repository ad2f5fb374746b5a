"""Markdown comments posted to PM issues when a feature ships."""

from __future__ import annotations

import logging
from typing import List

from .models import VERBOSITY_LEVELS, ShipContext

logger = logging.getLogger("pmsync.comments")

COMMIT_MESSAGE_LIMIT = 500


class CommentGenerator:
    """Render a ship comment at one of three verbosity levels.

    ``minimal`` is a single line, ``essential`` adds commit, change and test
    details, and ``rich`` also includes coverage, patterns and the commit
    message.
    """

    def __init__(self, verbosity: str = "essential"):
        if verbosity not in VERBOSITY_LEVELS:
            logger.warning(f"Unknown comment verbosity '{verbosity}', using 'essential'")
            verbosity = "essential"
        self.verbosity = verbosity

    def generate(self, context: ShipContext) -> str:
        if self.verbosity == "minimal":
            return self._minimal(context)

        parts: List[str] = ["## 🚀 Shipped via Hodge\n\n", self._essential_info(context)]
        parts.append(self._changes(context))
        parts.append(self._tests(context))
        if self.verbosity == "rich":
            parts.append(self._coverage(context))
            parts.append(self._patterns(context))
            parts.append(self._commit_message(context))
        parts.append(self._footer(context))
        return "".join(parts)

    def _minimal(self, context: ShipContext) -> str:
        commit = f" in {context.commit_hash[:7]}" if context.commit_hash else ""
        return f"✅ Feature {context.feature} has been shipped{commit}."

    def _essential_info(self, context: ShipContext) -> str:
        info = ""
        if context.commit_hash:
            info += f"**Commit**: `{context.commit_hash[:7]}`\n"
        if context.branch:
            info += f"**Branch**: `{context.branch}`\n"
        return info + "\n" if info else ""

    def _changes(self, context: ShipContext) -> str:
        if not (context.files_changed or context.lines_added or context.lines_removed):
            return ""
        lines = ["### 📊 Changes\n"]
        if context.files_changed:
            lines.append(f"- Files: {context.files_changed}\n")
        if context.lines_added:
            lines.append(f"- Added: +{context.lines_added}\n")
        if context.lines_removed:
            lines.append(f"- Removed: -{context.lines_removed}\n")
        return "".join(lines) + "\n"

    def _tests(self, context: ShipContext) -> str:
        results = context.tests_results
        if not results:
            return ""
        return f"### ✅ Tests\n{results.get('passed', 0)}/{results.get('total', 0)} passing\n\n"

    def _coverage(self, context: ShipContext) -> str:
        if context.coverage is None:
            return ""
        return f"### 📈 Coverage\n{context.coverage}%\n\n"

    def _patterns(self, context: ShipContext) -> str:
        if not context.patterns:
            return ""
        return "### 🎯 Patterns Applied\n" + "".join(f"- {p}\n" for p in context.patterns) + "\n"

    def _commit_message(self, context: ShipContext) -> str:
        message = context.commit_message
        if not message:
            return ""
        body = message[:COMMIT_MESSAGE_LIMIT]
        if len(message) > COMMIT_MESSAGE_LIMIT:
            body += "..."
        return f"### 📝 Commit Message\n```\n{body}\n```\n"

    def _footer(self, context: ShipContext) -> str:
        version = f" v{context.version}" if context.version else ""
        return f"\n---\n_Updated by Hodge{version}_"
