"""Built-in migration packages, keyed by the name used in `--packages`."""

from metric_backfill.packages import (
    collection_items,
    comments,
    image_reactions,
    model_downloads,
)
from metric_backfill.types import MigrationPackage


def _registry(*packages: MigrationPackage) -> dict[str, MigrationPackage]:
    out: dict[str, MigrationPackage] = {}
    for pkg in packages:
        if pkg.name in out:
            raise ValueError(f"Duplicate migration package name: {pkg.name}")
        out[pkg.name] = pkg
    return out


ALL_PACKAGES: dict[str, MigrationPackage] = _registry(
    image_reactions.package,
    collection_items.package,
    comments.package,
    model_downloads.package,
)

__all__ = ["ALL_PACKAGES"]
