"""Interactive choice between several matching packages."""

from __future__ import annotations

import logging
from typing import Callable, Sequence

from soarpkg.package import ResolvedPackage

logger = logging.getLogger(__name__)


def select_single_package(
    packages: Sequence[ResolvedPackage], ask: Callable[[str], str]
) -> ResolvedPackage:
    """List the candidates and ask until a valid number is given."""
    if not packages:
        raise ValueError("no packages to choose from")

    logger.info("Multiple packages available for %s", packages[0].package.name)
    for number, package in enumerate(packages, start=1):
        logger.info(
            "  [%d] [%s] %s: %s",
            number,
            package.collection,
            package.package.full_name("/"),
            package.package.description,
        )

    prompt = f"Select a package (1-{len(packages)}): "
    while True:
        response = ask(prompt).strip()
        if response.isdigit() and 0 < int(response) <= len(packages):
            print()
            return packages[int(response) - 1]
        logger.error("Invalid selection, please try again.")