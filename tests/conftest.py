"""
Shared fixtures for the math preview tests.

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
import logging
import sys
from pathlib import Path

import pytest

# Project root for the modules, tests dir for the fakes
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from fakes import FakeFallback, FakePrimary, make_context  # noqa: E402


@pytest.fixture
def sample_markdown():
    """Markdown mixing every delimiter class with prose that only looks like math."""
    return r"""
# Introduction

The equation $E = mc^2$ shows mass-energy equivalence, and \(a+b\) is inline too.

$$
\int_0^1 x^2 dx = \frac{1}{3}
$$

Bracket form:

\[ \nabla \cdot E = \frac{\rho}{\varepsilon_0} \]

AsciiMath: `sqrt(x^2 + 1)` and plain code: `print(x)`.

Price: $10.99 and nothing else.

```python
cost = "$5"  # $not math$
```
"""


@pytest.fixture
def fallback_only_ctx():
    """Context with only the fake fallback."""
    return make_context(fallback=FakeFallback())


@pytest.fixture
def ready_ctx():
    """Context with a ready fake primary and a fake fallback."""
    return make_context(primary=FakePrimary(ready=True), fallback=FakeFallback())


@pytest.fixture
def restore_root_logging():
    """Put the root logger back the way it was after setup_logging() ran."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
