"""
Progressive Upgrade Scheduler

Regions rendered by the fallback while the primary was still loading are
re-rendered with the primary once it becomes ready, in place, without a
full re-render of the document.

Fire-and-forget: nothing here is awaited by a render pass. Timeouts, stale
targets, vanished nodes and primary failures are skipped quietly.

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, List, Optional, Set

from bs4 import BeautifulSoup, Tag

from backend_selector import render_with_primary
from models import EngineChoice, FallbackUsageRecord
from restorer import parse_fragment

if TYPE_CHECKING:
    from pipeline import OutputTarget
    from render_context import RenderContext

logger = logging.getLogger("math_preview.upgrade")

FALLBACK_NODE_SELECTOR = (
    f'div.math-display[data-engine="{EngineChoice.fallback.value}"], '
    f'span.math-inline[data-engine="{EngineChoice.fallback.value}"]'
)


def _normalize(source: str) -> str:
    return "".join(source.split())


def find_fallback_node(soup: BeautifulSoup, record: FallbackUsageRecord) -> Optional[Tag]:
    """First not-yet-upgraded fallback wrapper whose source matches, ignoring whitespace."""
    wanted = _normalize(record.content)
    for node in soup.select(FALLBACK_NODE_SELECTOR):
        if node.get("data-upgraded") == "true":
            continue
        if node.get("class") and ("math-display" in node["class"]) != record.display_mode:
            continue
        if _normalize(node.get("data-math-source", "")) == wanted:
            return node
    return None


class ProgressiveUpgradeScheduler:
    """Upgrades fallback renders of one context once the primary is ready."""

    def __init__(self, ctx: "RenderContext"):
        self.ctx = ctx
        self.pending_tasks: Set[asyncio.Task] = set()
        self.upgraded = 0

    def schedule(self, target: "OutputTarget", generation: int) -> Optional[asyncio.Task]:
        """Consume the queued fallback records and upgrade them in the background."""
        records = self.ctx.take_fallback_usage()
        if not records:
            return None
        logger.debug(f"Scheduling upgrade of {len(records)} fallback renders (generation {generation})")
        task = asyncio.get_running_loop().create_task(self._upgrade(records, target, generation))
        self.pending_tasks.add(task)
        task.add_done_callback(self.pending_tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every outstanding upgrade."""
        while self.pending_tasks:
            await asyncio.gather(*list(self.pending_tasks), return_exceptions=True)

    async def _upgrade(
        self,
        records: List[FallbackUsageRecord],
        target: "OutputTarget",
        generation: int,
    ) -> int:
        if not await self.ctx.tracker.wait_ready():
            logger.debug(f"Primary never became ready, {len(records)} fallback renders stay")
            return 0
        if target.generation != generation or target.tree is None:
            logger.debug(f"Output replaced (generation {generation} -> {target.generation}), upgrade skipped")
            return 0

        count = 0
        for record in records:
            node = find_fallback_node(target.tree, record)
            if node is None:
                logger.debug(f"No fallback node for {record.content[:50]!r}")
                continue
            try:
                markup = await render_with_primary(record.content, record.effective_kind, self.ctx)
            except Exception as e:
                logger.debug(f"Upgrade of {record.content[:50]!r} failed: {e}")
                continue
            # The tree may have been replaced while the primary was rendering
            if target.generation != generation:
                logger.debug("Output replaced during upgrade, stopping")
                break

            node.clear()
            for child in parse_fragment(markup):
                node.append(child.extract())
            node["data-engine"] = EngineChoice.primary.value
            node["data-upgraded"] = "true"
            count += 1

        self.upgraded += count
        if count:
            logger.info(f"Upgraded {count}/{len(records)} fallback renders to the primary backend")
        return count
