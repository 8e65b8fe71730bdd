"""Guard the Pydantic v2 conventions the engine relies on."""

from __future__ import annotations

import inspect
import re
from pathlib import Path
from typing import Iterator

import pytest

import pke.core.models as models
import pke.engine.parsing as parsing
from pke.core.models import CamelModel

REPO_ROOT = Path(__file__).resolve().parents[1]
SOURCE_DIRS: tuple[str, ...] = ("apps", "pke")
V1_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("v1 validator decorator", re.compile(r"@(?:root_)?validator\b")),
    ("v1 validator import", re.compile(r"\bfrom\s+pydantic\s+import\b[^\n]*\b(?:root_)?validator\b")),
    ("inner Config class", re.compile(r"^\s+class Config\b", re.MULTILINE)),
    ("v1 serializer", re.compile(r"\.(?:dict|json|copy)\(\s*(?:by_alias|exclude|include|deep)\b")),
    ("v1 constructor", re.compile(r"\.(?:parse_obj|parse_raw|construct)\(")),
)


def _sources() -> Iterator[Path]:
    for directory in SOURCE_DIRS:
        yield from (REPO_ROOT / directory).rglob("*.py")


def test_sources_use_v2_api_only() -> None:
    offenders: list[str] = []
    for path in _sources():
        text = path.read_text(encoding="utf-8")
        for label, pattern in V1_PATTERNS:
            if pattern.search(text):
                offenders.append(f"{path.relative_to(REPO_ROOT)} -> {label}")

    if offenders:
        pytest.fail("Pydantic v1 usage detected:\n" + "\n".join(offenders))


def _camel_models() -> list[type]:
    found = []
    for module in (models, parsing):
        for _, obj in inspect.getmembers(module, inspect.isclass):
            if issubclass(obj, CamelModel) and obj is not CamelModel and obj not in found:
                found.append(obj)
    return found


@pytest.mark.parametrize("model", _camel_models(), ids=lambda model: model.__name__)
def test_camel_models_accept_both_key_styles(model: type) -> None:
    config = model.model_config
    assert config.get("populate_by_name") is True
    assert config.get("alias_generator") is not None

    for name, field in model.model_fields.items():
        if "_" not in name:
            continue
        assert field.alias is not None
        # explicit aliases such as linkedLO win over the generator
        if (field.alias_priority or 0) < 2:
            assert field.alias == config["alias_generator"](name)
