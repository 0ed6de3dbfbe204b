"""
Math Render Pipeline

    raw text
      -> protect_text        (scan + markers + registry)
      -> transform           (markdown -> HTML, math untouched)
      -> restore_placeholders
      -> recover_unrestored_math
      -> finished tree       (published to an OutputTarget)

RenderCoordinator serializes passes for one output target: a request that
arrives while a pass is running waits for it, and only the latest waiting
request is rendered.

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple, Union

import markdown
from bs4 import BeautifulSoup

from models import FailureKind, MathKind, RestorationDiagnostic
from placeholders import ProtectionResult, protect_text
from recovery import recover_unrestored_math
from render_context import RenderContext
from restorer import CONTEXT_LIMIT, RestoreReport, restore_placeholders
from text_leaves import SoupLeafTree
from upgrade_scheduler import ProgressiveUpgradeScheduler

logger = logging.getLogger("math_preview.pipeline")

Transform = Callable[[str], Union[str, BeautifulSoup]]

DEFAULT_EXTENSIONS = ["fenced_code", "tables"]


def markdown_transform(text: str, extensions: Optional[List[str]] = None) -> str:
    """Python-Markdown with raw inline HTML passed through (the markers rely on it)."""
    return markdown.markdown(text, extensions=list(extensions or DEFAULT_EXTENSIONS))


@dataclass
class OutputTarget:
    """Where finished trees go. generation changes on every publish."""
    tree: Optional[BeautifulSoup] = None
    generation: int = 0

    def publish(self, tree: BeautifulSoup) -> int:
        self.generation += 1
        self.tree = tree
        return self.generation

    def html(self) -> str:
        return str(self.tree) if self.tree is not None else ""


@dataclass
class PassStats:
    """Numbers from the last completed pass."""
    regions: int = 0
    recovered: int = 0
    repaired: bool = False
    duration: float = 0.0
    report: Optional[RestoreReport] = None


class MathRenderPipeline:
    """Renders documents with math through the two-backend machinery."""

    def __init__(
        self,
        ctx: Optional[RenderContext] = None,
        transform: Optional[Transform] = None,
        target: Optional[OutputTarget] = None,
    ):
        self.ctx = ctx or RenderContext()
        self.transform = transform or self._markdown
        self.target = target or OutputTarget()
        self.scheduler = ProgressiveUpgradeScheduler(self.ctx)
        self.last_stats = PassStats()
        self.last_protection: Optional[ProtectionResult] = None

    def _markdown(self, text: str) -> str:
        return markdown_transform(text, self.ctx.settings.markdown_extensions)

    async def render(self, raw_text: str, publish: bool = True) -> BeautifulSoup:
        """
        Run one full pass and return the finished tree.

        Content problems never raise: they turn into literal text, error
        annotations or diagnostics on the context.
        """
        started = time.time()
        settings = self.ctx.settings
        self.ctx.tracker.ensure_started()

        protection = protect_text(
            raw_text,
            repair=True,
            min_tail=settings.repair_min_tail,
            max_tail=settings.repair_max_tail,
        )
        self.last_protection = protection

        if protection.scan.unclosed_at is not None:
            self._record_unclosed(protection.scan.text, protection.scan.unclosed_at)

        transformed = self.transform(protection.protected_text)
        if isinstance(transformed, BeautifulSoup):
            soup = transformed
        else:
            soup = BeautifulSoup(transformed, "html.parser")

        report = await restore_placeholders(soup, protection.registry, self.ctx)
        recovered = await recover_unrestored_math(SoupLeafTree(soup), self.ctx)

        self.last_stats = PassStats(
            regions=len(protection.registry),
            recovered=recovered,
            repaired=protection.scan.repaired,
            duration=time.time() - started,
            report=report,
        )

        if publish:
            generation = self.target.publish(soup)
            self.scheduler.schedule(self.target, generation)
        else:
            # Nothing published, nothing to upgrade: the next pass starts clean
            dropped = self.ctx.take_fallback_usage()
            if dropped:
                logger.debug(f"Dropped {len(dropped)} fallback records of an unpublished pass")

        logger.info(
            f"Rendered {len(raw_text)} chars: {len(protection.registry)} regions, "
            f"{recovered} recovered, readiness {self.ctx.tracker.state.value} "
            f"({self.last_stats.duration:.3f}s)"
        )
        return soup

    def _record_unclosed(self, text: str, at: int) -> None:
        """An unclosed $$ the scanner would not repair stays literal text."""
        self.ctx.record_diagnostic(RestorationDiagnostic(
            key=f"unclosed@{at}",
            kind=MathKind.display_math,
            failure=FailureKind.syntax_ambiguity,
            context_snippet=text[at:at + CONTEXT_LIMIT],
        ))

    async def render_html(self, raw_text: str, publish: bool = True) -> str:
        return str(await self.render(raw_text, publish=publish))


class RenderCoordinator:
    """
    One pass at a time per output target, latest request wins.

    A request arriving while a pass runs replaces any request already
    waiting; the replaced one resolves to None.
    """

    def __init__(self, pipeline: MathRenderPipeline):
        self.pipeline = pipeline
        self._waiting: Optional[Tuple[str, asyncio.Future]] = None
        self._driver: Optional[asyncio.Task] = None
        self.passes = 0
        self.superseded = 0

    @property
    def in_progress(self) -> bool:
        return self._driver is not None and not self._driver.done()

    async def request(self, raw_text: str) -> Optional[BeautifulSoup]:
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        if self._waiting is not None:
            _, previous = self._waiting
            if not previous.done():
                previous.set_result(None)
            self.superseded += 1
            logger.debug("Render request superseded by a newer one")
        self._waiting = (raw_text, future)

        if not self.in_progress:
            self._driver = loop.create_task(self._drive())
        return await future

    async def _drive(self) -> None:
        while self._waiting is not None:
            raw_text, future = self._waiting
            self._waiting = None
            try:
                tree = await self.pipeline.render(raw_text)
            except Exception as e:
                logger.error(f"Render pass failed: {type(e).__name__}: {e}")
                if not future.done():
                    future.set_exception(e)
                continue
            self.passes += 1
            if not future.done():
                future.set_result(tree)
