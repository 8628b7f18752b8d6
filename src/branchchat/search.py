"""Web-search collaborator and reference-prompt composition."""

import json
from abc import ABC, abstractmethod

REFERENCE_PROMPT = """Answer the question using the search results below where they are relevant.
Cite sources inline as [n] when you use them.

# Search results
{references}

# Question
{question}"""


class SearchProvider(ABC):
    """Base class for web-search backends."""

    name: str

    @abstractmethod
    async def search(self, query: str) -> dict:
        """Return a structured result payload for ``query``.

        Raises :class:`~branchchat.errors.SearchError` on failure.
        """
        ...


def compose_reference_prompt(question: str, results: dict) -> str:
    """Wrap ``question`` with the search results as fenced JSON references."""
    references = f"```json\n{json.dumps(results, indent=2, ensure_ascii=False)}\n```"
    return REFERENCE_PROMPT.replace("{question}", question).replace("{references}", references)
