"""
Screenshot context policy.

Decides, per turn, whether a pending screenshot rides along with the user's
message:

  - no pending image: nothing to decide;
  - first turn of the session (a one-shot flag flips on use): ask the
    provider a short yes/no probe and attach only on an affirmative answer.
    An empty query attaches without probing since the image is then the
    whole question;
  - later turns: the image was captured explicitly for that message and is
    attached as-is (unless the policy is configured to probe every turn).

A probe failure is advisory: it is logged and the image is not attached.
A rejected image is dropped, never carried over to a later turn.
"""

from __future__ import annotations

import logging

from assistcore.llm.errors import ProviderError
from assistcore.llm.providers.base import Provider
from assistcore.llm.retry import RetryController
from assistcore.llm.types import ContextBundle, ImageAttachment
from assistcore.prompts.system import build_probe_prompt

logger = logging.getLogger(__name__)


class ContextPolicy:
    def __init__(
        self,
        probe_enabled: bool = True,
        first_turn_only: bool = True,
        retry: RetryController | None = None,
    ) -> None:
        self.probe_enabled = probe_enabled
        self.first_turn_only = first_turn_only
        self.retry = retry
        self._first_turn_pending = True

    @property
    def first_turn_pending(self) -> bool:
        return self._first_turn_pending

    async def resolve(
        self,
        user_text: str,
        pending_image: ImageAttachment | None,
        provider: Provider,
    ) -> ContextBundle:
        """Return the bundle for this turn; the image is set only if attached."""
        first_turn = self._first_turn_pending
        self._first_turn_pending = False

        if pending_image is None:
            return ContextBundle()

        if not self.probe_enabled or (self.first_turn_only and not first_turn):
            return ContextBundle(image=pending_image)

        if not user_text.strip():
            logger.info("Context: empty query, attaching screenshot without probe")
            return ContextBundle(image=pending_image)

        attach = await self._probe(user_text, pending_image, provider)
        logger.info("Context: screenshot %s by probe", "attached" if attach else "discarded")
        return ContextBundle(image=pending_image if attach else None)

    async def _probe(
        self, user_text: str, image: ImageAttachment, provider: Provider
    ) -> bool:
        prompt = build_probe_prompt(user_text)
        try:
            if self.retry is not None:
                answer = await self.retry.call(lambda: provider.probe(prompt, image))
            else:
                answer = await provider.probe(prompt, image)
        except ProviderError as exc:
            logger.warning("Screenshot probe failed (%s); not attaching image", exc)
            return False
        return parse_probe_answer(answer)


def parse_probe_answer(answer: str) -> bool:
    """Interpret a probe reply; anything but a leading ``true``/``yes`` is negative."""
    text = (answer or "").strip().strip('"\'.').lower()
    return text.startswith("true") or text.startswith("yes")
