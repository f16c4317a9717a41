"""Rewrite upstream thinking/answer markup into the configured rendering mode."""

from __future__ import annotations

import logging
import re
from typing import Tuple

from models import ChatEvent, Phase, RenderingMode

log = logging.getLogger("zai_proxy")

_DETAILS_BLOCK_RE = re.compile(r"<details[^>]*?>.*?</details>", re.S)
_DETAILS_OPEN_RE = re.compile(r"<details[^>]*>\n?")
_DETAILS_CLOSE_RE = re.compile(r"\n?</details>")
_DETAILS_ANY_RE = re.compile(r"</?details[^>]*>")
_QUOTE_CONT_RE = re.compile(r"\n> ?")
# Tagged mode drops the summary together with its surrounding newlines.
_SUMMARY_TAGGED_RE = re.compile(r"\n?<summary>.*?</summary>\n?")
_SUMMARY_RE = re.compile(r"\n?<summary>.*?</summary>")
_SUMMARY_BLOCK_RE = re.compile(r"<summary>.*?</summary>", re.S)
_DURATION_RE = re.compile(r'duration="(\d+)"')

_LITERAL_MARKERS = ("</thinking>", "<Full>", "</Full>")
_SUMMARY_MARKER = "summary>"

THINK_OPEN = "<think>\n\n"
THINK_CLOSE = "\n\n</think>"
ANNOTATED_OPEN = '<details type="reasoning">\n\n'
ANNOTATED_CLOSE = "\n\n</details>"
VERBOSE_OPEN = '<details type="reasoning" open><div>\n\n'
VERBOSE_CLOSE = "\n\n</div></details>"


def _split_after(content: str, marker: str) -> Tuple[str, str] | None:
    """Split at the end of the first ``marker``; None when absent."""
    idx = content.find(marker)
    if idx < 0:
        return None
    end = idx + len(marker)
    return content[:end], content[end:]


class ContentTransformer:
    """Stateful rewrite of one request's upstream fragments.

    The upstream sends a running transcript rather than clean deltas: an
    answer event may re-wrap the whole thought block before the new answer
    text. The transformer remembers the phase of the previous event so the
    thought is closed exactly once and a repeated answer segment is not
    rendered twice.

    One instance per inbound request; never share it between requests.
    """

    def __init__(self, mode: RenderingMode) -> None:
        self.mode = mode
        self.last_phase = Phase.THINKING

    def transform(self, fragment: str, phase: Phase) -> str:
        """Return the visible text for ``fragment`` and advance the phase."""
        out = fragment
        if fragment and (
            phase in (Phase.THINKING, Phase.ANSWER) or _SUMMARY_MARKER in fragment
        ):
            out = self._rewrite(fragment, phase)

        if out != fragment:
            log.debug("R content: %s %r", phase.value, fragment)
            log.debug("W content: %s %r", phase.value, out)
        elif fragment:
            log.debug("R content: %s %r", phase.value, fragment)

        if phase in (Phase.THINKING, Phase.ANSWER):
            self.last_phase = phase
        return out

    def extract(self, event: ChatEvent) -> str:
        """Transform the fragment carried by a decoded ChatEvent."""
        return self.transform(event.fragment, event.phase)

    def _rewrite(self, raw: str, phase: Phase) -> str:
        content = _DETAILS_BLOCK_RE.sub(
            lambda m: self._block_replacement(raw, m, phase), raw, count=1
        )
        for marker in _LITERAL_MARKERS:
            content = content.replace(marker, "")

        if self.mode is RenderingMode.TAGGED:
            return self._tagged(content, phase)
        if self.mode is RenderingMode.ANNOTATED:
            return self._annotated(content, phase)
        return self._verbose(content, raw, phase)

    def _block_replacement(self, raw: str, match: re.Match, phase: Phase) -> str:
        """
        A re-sent thought block keeps its boundary as a bare close tag.

        Only a block that follows a thought or opens the fragment counts as
        the re-sent thought; a collapsible inside answer prose is dropped.
        """
        if phase is not Phase.ANSWER:
            return ""
        if self.last_phase is Phase.THINKING or not raw[: match.start()].strip():
            return "</details>"
        return ""

    def _answer_transition(self, content: str) -> str:
        """Answer text without a close marker: separate it from the thought once."""
        if self.last_phase is Phase.THINKING:
            return "\n\n" + content.lstrip("\n")
        return content

    def _tagged(self, content: str, phase: Phase) -> str:
        if phase is Phase.THINKING:
            if content.startswith("> "):
                content = content[2:]
            content = _QUOTE_CONT_RE.sub("\n", content)
            content = content.strip()

        content = _SUMMARY_TAGGED_RE.sub("", content)
        content = _DETAILS_OPEN_RE.sub(THINK_OPEN, content)
        content = _DETAILS_CLOSE_RE.sub(THINK_CLOSE, content)

        if phase is not Phase.ANSWER:
            return content

        parts = _split_after(content, "</think>")
        if parts is None:
            return self._answer_transition(content)
        _, after = parts
        if not after.strip():
            # thought-only terminal frame
            return THINK_CLOSE
        if self.last_phase is Phase.THINKING:
            return THINK_CLOSE + "\n\n" + after.lstrip("\n")
        return ""

    def _annotated(self, content: str, phase: Phase) -> str:
        if phase is Phase.THINKING:
            content = _SUMMARY_RE.sub("", content)

        content = _DETAILS_OPEN_RE.sub(ANNOTATED_OPEN, content)
        content = _DETAILS_CLOSE_RE.sub(ANNOTATED_CLOSE, content)

        if phase is not Phase.ANSWER:
            return content

        parts = _split_after(content, "</details>")
        if parts is None:
            return _DETAILS_ANY_RE.sub("", self._answer_transition(content))
        _, after = parts
        if not after.strip():
            return ""
        if self.last_phase is Phase.THINKING:
            return ANNOTATED_CLOSE + "\n\n" + _DETAILS_ANY_RE.sub("", after.lstrip("\n"))
        return ""

    def _verbose(self, content: str, raw: str, phase: Phase) -> str:
        if phase is Phase.THINKING:
            content = _SUMMARY_RE.sub("", content)

        content = _DETAILS_OPEN_RE.sub(VERBOSE_OPEN, content)
        content = _DETAILS_CLOSE_RE.sub(VERBOSE_CLOSE, content)

        if phase is not Phase.ANSWER:
            return content

        parts = _split_after(content, "</details>")
        if parts is None:
            return self._answer_transition(content)
        before, after = parts
        if after.strip():
            if self.last_phase is Phase.THINKING:
                return VERBOSE_CLOSE + "\n\n" + after.lstrip("\n")
            return ""

        # Thought-only terminal frame: keep the upstream's own summary when
        # it sent one, otherwise rebuild it from the duration attribute.
        summary = _SUMMARY_BLOCK_RE.search(before) or _SUMMARY_BLOCK_RE.search(raw)
        if summary:
            return f"\n\n</div>{summary.group(0)}</details>\n\n"
        duration = _DURATION_RE.search(raw)
        if duration:
            return (
                f"\n\n</div><summary>Thought for {duration.group(1)} seconds"
                f"</summary></details>\n\n"
            )
        return VERBOSE_CLOSE
