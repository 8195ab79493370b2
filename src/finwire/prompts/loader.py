"""Prompt lookup: Promptorium first, then the prompts shipped in this package.

Bundled prompts live at ``finwire/prompts/<key>/<key>-<version>.md`` and are
read as package data, so they resolve from a wheel as well as a checkout.
"""

from __future__ import annotations

from importlib import resources
from importlib.resources.abc import Traversable

from loguru import logger
from promptorium import load_prompt as promptorium_load_prompt

from finwire.errors import FinwireError

PROMPTS_PACKAGE = "finwire.prompts"


class PromptLoadError(FinwireError):
    """Neither Promptorium nor the bundled prompts have text for a key."""


def bundled_versions(
    prompt_key: str, root: Traversable | None = None
) -> dict[int, Traversable]:
    """Map each bundled version number of ``prompt_key`` to its file."""
    folder = (root or resources.files(PROMPTS_PACKAGE)).joinpath(prompt_key)
    if not folder.is_dir():
        return {}

    prefix = f"{prompt_key}-"
    versions: dict[int, Traversable] = {}
    for entry in folder.iterdir():
        if not entry.name.endswith(".md"):
            continue
        number = entry.name.removesuffix(".md").removeprefix(prefix)
        if number != entry.name.removesuffix(".md") and number.isdigit():
            versions[int(number)] = entry
    return versions


def load_finwire_prompt(prompt_key: str, root: Traversable | None = None) -> str:
    """Return the managed prompt for a key, else its newest bundled version."""
    try:
        prompt = promptorium_load_prompt(prompt_key)
    except Exception as e:  # noqa: BLE001
        logger.bind(prompt_key=prompt_key).debug(
            "Promptorium has no prompt {}, using bundled copy: {}", prompt_key, e
        )
        prompt = None
    if isinstance(prompt, str):
        return prompt

    versions = bundled_versions(prompt_key, root)
    if not versions:
        raise PromptLoadError(f"Prompt not found: {prompt_key}")
    return versions[max(versions)].read_text(encoding="utf-8")
