"""MCP resources for intervention catalog discovery."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from fastmcp import FastMCP

if TYPE_CHECKING:
    from riskwatch.domains.recovery.domain_logic.catalog import InterventionCatalog


def register_catalog_resources(mcp: FastMCP, catalog: InterventionCatalog) -> None:
    """Register the intervention catalog resource on the MCP server."""

    @mcp.resource("catalog://interventions")
    def intervention_catalog_resource() -> str:
        """All interventions the recommendation ranker can choose from."""
        return json.dumps(
            {
                "intervention_count": len(catalog),
                "categories": catalog.categories(),
                "interventions": catalog.to_list(),
            },
            indent=2,
        )
