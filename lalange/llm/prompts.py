"""Prompt template library for enrichment stages.

Responsibilities:
- Centralize prompt construction for density scoring and chunk summarization.
- Compose configured base prompts with enabled instruction fragments.
"""

from __future__ import annotations

from typing import Sequence

from ..models.datatypes import PromptFragment

DEFAULT_LIBRARIAN_BASE_PROMPT = (
    "You are a meticulous librarian who rates how demanding each sentence of a book is to read."
)
DEFAULT_SUMMARIZER_BASE_PROMPT = (
    "You are an editor who writes short, faithful summaries of book passages."
)
DEFAULT_SUMMARY_INSTRUCTION = (
    "Summarize the following text in 5 sentences. Focus on the plot and key events."
)


def compose_system_prompt(base_prompt: str, fragments: Sequence[PromptFragment]) -> str:
    """Join a base prompt with the text of every enabled fragment."""

    fragment_text = "\n".join(fragment.text for fragment in fragments if fragment.enabled)
    return f"{base_prompt}\n{fragment_text}".strip()


class PromptLibrary:
    """Build prompt strings for supported enrichment tasks."""

    def density_prompt(self, system_prompt: str, sentences: Sequence[str]) -> str:
        """Return the sentence complexity scoring prompt."""

        sentence_block = "\n".join(sentences)
        return f"""{system_prompt}

Analyze the literary density of the following sentences.
For each sentence, assign a "complexity_score" from 0 to 10.

CRITERIA:
- Score 0 (Junk/Structural): Footnotes, page numbers, misplaced chapter titles, URLs, copyright notices, broken formatting, or non-narrative artifacts.
- Score 1-3 (Simple): Narrative, concrete examples, simple sentence structure.
- Score 8-10 (Dense): Abstract theory, dialectics, archaic phrasing, multiple nested clauses.

OUTPUT FORMAT:
You are a JSON generator. Output ONLY valid JSON.
- Do NOT include any conversational text.
- Do NOT use Markdown formatting.
- Key: The first 5 words of the sentence, with ALL punctuation and quotes REMOVED.
- Value: The score (number).

EXAMPLE INPUT:
"The wealth of those societies in which the capitalist mode of production prevails, presents itself as an immense accumulation of commodities. This is a fact. [12]"

EXAMPLE OUTPUT:
{{
  "The wealth of those societies": 9,
  "This is a fact": 2,
  "12": 0
}}

TEXT TO ANALYZE:
{sentence_block}
"""

    def summary_prompt(
        self,
        system_prompt: str,
        instruction: str,
        excerpt: str,
        *,
        junk_detection: bool = True,
    ) -> str:
        """Return the chunk summary prompt, with or without junk classification."""

        if junk_detection:
            task = f"""Analyze the following text segment from a book.
Task:
1. Determine if this text is "CONTENT" (narrative, story, useful info) or "JUNK" (copyright page, table of contents, list of image references, empty space, or just garbage).
2. If CONTENT, provide a short "title" (max 5 words) and a "summary" based on this instruction: "{instruction}".
3. If JUNK, return status "JUNK".

OUTPUT JSON ONLY:
{{
  "status": "CONTENT" | "JUNK",
  "title": "...",
  "summary": "..."
}}"""
        else:
            task = f"""Analyze the following text segment from a book.
Task:
Provide a short "title" (max 5 words) and a "summary" based on this instruction: "{instruction}".

OUTPUT JSON ONLY:
{{
  "status": "CONTENT",
  "title": "...",
  "summary": "..."
}}"""
        return f"{system_prompt}\n\n{task}\n\nTEXT:\n{excerpt}\n"
