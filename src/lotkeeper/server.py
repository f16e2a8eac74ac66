"""FastMCP server exposing inventory actions as tools."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from .config import settings
from .database import close_db
from .errors import LotkeeperError
from .models import BatchGroup, OperatingMode, Product
from .operations import LotEdit, NewLot, OperationResult
from .session import InventorySession
from .reader import quantity_delta
from .utils import action_tone, format_action_name, format_id, format_quantity_change, parse_expiry_date

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_session: Optional[InventorySession] = None


async def get_session() -> InventorySession:
    """Return the server's session, starting it on first use."""
    global _session
    if _session is None:
        session = InventorySession(settings.operating_mode)
        await session.start()
        _session = session
    return _session


# Lifespan management for the session and mirror database
@asynccontextmanager
async def lifespan(app: Any) -> AsyncGenerator[None, None]:
    """Start the session on startup and release its resources on shutdown."""
    global _session
    logger.info("Starting lotkeeper MCP server...")
    try:
        await get_session()
        yield
    finally:
        logger.info("Shutting down server...")
        if _session is not None:
            await _session.close()
            _session = None
        close_db()
        logger.info("Server shutdown complete")


# Initialize FastMCP server
mcp = FastMCP(name="lotkeeper", lifespan=lifespan)


def _product_dict(product: Product) -> dict[str, Any]:
    return {
        "id": product.id,
        "name": product.name,
        "unit": product.unit.value,
        "quantity": product.quantity,
        "lots": [
            {
                "id": lot.id,
                "quantity": lot.quantity,
                "expiry_date": lot.expiry_date.isoformat(),
            }
            for lot in product.lots
        ],
    }


def _result_dict(result: OperationResult, session: InventorySession, message: str) -> dict[str, Any]:
    notices = session.notices.drain()
    return {
        "status": "success" if result.all_succeeded else ("partial" if result.committed else "failed"),
        "message": message if result.all_succeeded else "; ".join(n.message for n in notices),
        "batch_id": result.batch_id,
        "committed": [o.entity_id for o in result.committed],
        "failed": [{"entity_id": o.entity_id, "error": str(o.error)} for o in result.failures],
    }


def _group_dict(group: BatchGroup, units: dict[str, str]) -> dict[str, Any]:
    return {
        "batch_id": group.batch_id,
        "batch_ref": format_id(group.batch_id),
        "created_at": group.created_at.isoformat(),
        "record_count": group.record_count,
        "records": [
            {
                "entity_type": r.entity_type.value,
                "entity_id": r.entity_id,
                "ref": format_id(r.entity_id),
                "action": format_action_name(r.action),
                "tone": action_tone(r.action),
                "change": format_quantity_change(quantity_delta(r.details), units.get(r.details.product_id, "")),
                "product": r.product_name_context,
            }
            for r in group.records
        ],
        "summaries": [
            {
                **s.model_dump(by_alias=True),
                "net_change": format_quantity_change(s.net_change, units.get(s.product_id, "")),
            }
            for s in group.product_summaries.values()
        ],
    }


def _require_date(value: str) -> Any:
    expiry = parse_expiry_date(value)
    if expiry is None:
        raise ToolError(f"Could not understand expiry date '{value}'")
    return expiry


@mcp.tool()  # type: ignore[misc]
async def list_products() -> dict[str, Any]:
    """List every product with its quantity and lots.

    Returns:
        Dictionary with status, mode, count and products
    """
    try:
        session = await get_session()
        return {
            "status": "success",
            "mode": session.mode.value,
            "count": len(session.products),
            "products": [_product_dict(p) for p in session.products],
        }
    except Exception as e:
        logger.exception("Error listing products")
        raise ToolError(f"Failed to list products: {str(e)}")


@mcp.tool()  # type: ignore[misc]
async def add_product(name: str, unit: str, quantity: float = 0) -> dict[str, Any]:
    """Add a new product.

    Args:
        name: Product name (e.g., "Alade")
        unit: "L" for volume or "kg" for mass
        quantity: Starting quantity for a product tracked without lots

    Returns:
        Dictionary with status, message and batch id
    """
    try:
        session = await get_session()
        result = await session.operations.add_product(name, unit, quantity)
        return _result_dict(result, session, f"Added {name}")
    except LotkeeperError as e:
        raise ToolError(str(e))
    except Exception as e:
        logger.exception("Error adding product")
        raise ToolError(f"Failed to add product: {str(e)}")


@mcp.tool()  # type: ignore[misc]
async def adjust_quantity(product_id: str, change: float) -> dict[str, Any]:
    """Add or remove stock on a product that has no lots.

    Args:
        product_id: ID of the product
        change: Positive to add stock, negative to remove it

    Examples:
        - "Use 20 L of Alade" -> adjust_quantity(<alade id>, -20)
    """
    try:
        session = await get_session()
        result = await session.operations.adjust_quantity(product_id, change)
        return _result_dict(result, session, f"Quantity changed by {change:+g}")
    except LotkeeperError as e:
        raise ToolError(str(e))
    except Exception as e:
        logger.exception("Error adjusting quantity")
        raise ToolError(f"Failed to adjust quantity: {str(e)}")


@mcp.tool()  # type: ignore[misc]
async def edit_product(
    product_id: str,
    name: Optional[str] = None,
    unit: Optional[str] = None,
    new_lots: Optional[list[dict[str, Any]]] = None,
    updated_lots: Optional[list[dict[str, Any]]] = None,
    deleted_lot_ids: Optional[list[str]] = None,
) -> dict[str, Any]:
    """Save product edits: name/unit plus lot changes, as one batch.

    Args:
        product_id: ID of the product
        name: New name (optional)
        unit: New unit, "L" or "kg" (optional)
        new_lots: Lots to add, each {"quantity": 30, "expiry_date": "2026-03-01"}
        updated_lots: Lot edits, each {"lot_id": ..., "quantity": ..., "expiry_date": ...}
        deleted_lot_ids: IDs of lots to remove
    """
    try:
        session = await get_session()
        drafts = [
            NewLot(quantity=lot["quantity"], expiry_date=_require_date(str(lot["expiry_date"])))
            for lot in new_lots or []
        ]
        edits = [
            LotEdit(
                lot_id=edit["lot_id"],
                quantity=edit.get("quantity"),
                expiry_date=_require_date(str(edit["expiry_date"])) if edit.get("expiry_date") else None,
            )
            for edit in updated_lots or []
        ]
        result = await session.operations.save_product_edits(
            product_id,
            name=name,
            unit=unit,
            new_lots=drafts,
            updated_lots=edits,
            deleted_lot_ids=deleted_lot_ids or [],
        )
        return _result_dict(result, session, "Changes saved")
    except ToolError:
        raise
    except (LotkeeperError, KeyError) as e:
        raise ToolError(str(e))
    except Exception as e:
        logger.exception("Error editing product")
        raise ToolError(f"Failed to edit product: {str(e)}")


@mcp.tool()  # type: ignore[misc]
async def add_lot(product_id: str, quantity: float, expiry_date: str) -> dict[str, Any]:
    """Add a lot to a product.

    Args:
        product_id: ID of the product
        quantity: Lot quantity, greater than zero
        expiry_date: Expiry date (e.g., "2026-03-01", "in 6 months")
    """
    try:
        session = await get_session()
        result = await session.operations.add_lot(product_id, quantity, _require_date(expiry_date))
        return _result_dict(result, session, f"Lot of {quantity:g} added")
    except ToolError:
        raise
    except LotkeeperError as e:
        raise ToolError(str(e))
    except Exception as e:
        logger.exception("Error adding lot")
        raise ToolError(f"Failed to add lot: {str(e)}")


@mcp.tool()  # type: ignore[misc]
async def remove_lot(lot_id: str) -> dict[str, Any]:
    """Remove a lot from its product.

    Args:
        lot_id: ID of the lot to remove
    """
    try:
        session = await get_session()
        result = await session.operations.remove_lot(lot_id)
        return _result_dict(result, session, "Lot removed")
    except LotkeeperError as e:
        raise ToolError(str(e))
    except Exception as e:
        logger.exception("Error removing lot")
        raise ToolError(f"Failed to remove lot: {str(e)}")


@mcp.tool()  # type: ignore[misc]
async def remove_product(product_id: str) -> dict[str, Any]:
    """Remove a product and all of its lots.

    Args:
        product_id: ID of the product to remove
    """
    try:
        session = await get_session()
        result = await session.operations.remove_product(product_id)
        return _result_dict(result, session, "Product removed")
    except LotkeeperError as e:
        raise ToolError(str(e))
    except Exception as e:
        logger.exception("Error removing product")
        raise ToolError(f"Failed to remove product: {str(e)}")


@mcp.tool()  # type: ignore[misc]
async def history_page(page: int = 1, page_size: Optional[int] = None) -> dict[str, Any]:
    """Show one page of the change history, grouped by operation.

    Args:
        page: Page number, starting at 1. Pages past the end show the last page.
        page_size: Batches per page (defaults to the configured size)

    Returns:
        Dictionary with the served page, totals and the batch groups
    """
    try:
        session = await get_session()
        result = await session.history_page(page, page_size)
        units = {p.id: p.unit.value for p in session.products}
        return {
            "status": "success",
            "page": result.page,
            "page_size": result.page_size,
            "total_pages": result.total_pages,
            "total_batches": result.total_batches,
            "groups": [_group_dict(g, units) for g in result.groups],
        }
    except LotkeeperError as e:
        raise ToolError(str(e))
    except Exception as e:
        logger.exception("Error reading history")
        raise ToolError(f"Failed to read history: {str(e)}")


@mcp.tool()  # type: ignore[misc]
async def login(username: str, password: str) -> dict[str, Any]:
    """Log in to the inventory server. Needed before changes in connected mode.

    Args:
        username: Account name on the server
        password: Account password

    Returns:
        Dictionary with status, message and the product count after reloading
    """
    try:
        session = await get_session()
        ok = await session.login(username, password)
    except Exception as e:
        logger.exception("Error logging in")
        raise ToolError(f"Failed to log in: {str(e)}")
    notices = session.notices.drain()
    if not ok:
        raise ToolError("; ".join(n.message for n in notices) or "Login failed")
    return {
        "status": "success",
        "message": f"Logged in as {session.auth.username}",
        "mode": session.mode.value,
        "count": len(session.products),
    }


@mcp.tool()  # type: ignore[misc]
async def switch_mode(mode: str) -> dict[str, Any]:
    """Switch between "connected" (server of record) and "local" (demo sandbox).

    Args:
        mode: "connected" or "local"
    """
    try:
        target = OperatingMode(mode.strip().lower())
    except ValueError:
        raise ToolError(f"Unknown mode '{mode}'. Use 'connected' or 'local'.")
    try:
        session = await get_session()
        await session.switch_mode(target)
        notices = session.notices.drain()
        return {
            "status": "success",
            "mode": session.mode.value,
            "count": len(session.products),
            "notices": [n.message for n in notices],
        }
    except Exception as e:
        logger.exception("Error switching mode")
        raise ToolError(f"Failed to switch mode: {str(e)}")


def main() -> None:
    """Entry point for the MCP server."""
    logger.info("Initializing lotkeeper MCP server")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
