"""FamilyTree - Genealogical Forest Editor Backend.

FastAPI server exposing the family forest mutation and export operations.
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv("FAMILYTREE_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("familytree")

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from family_tree import (
    DEFAULT_ME_NAME,
    EmptyForestError,
    FamilyForest,
    add_child,
    add_parent,
    add_sibling,
    check_forest_consistency,
    delete_node,
    export_tree,
    get_all_nodes,
    get_node,
    get_node_data,
)

ME_NAME = os.getenv("FAMILYTREE_ME_NAME", DEFAULT_ME_NAME)
EXPORT_INDENT = int(os.getenv("FAMILYTREE_EXPORT_INDENT", "2"))
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "FAMILYTREE_CORS_ORIGINS",
        "http://localhost:4200,http://localhost:5173,http://127.0.0.1:5173",
    ).split(",")
    if origin.strip()
]

# HTTP status for each failed-operation error code
ERROR_STATUS_CODES = {
    "validation": 400,
    "no_parent": 400,
    "conflict": 409,
    "protected": 409,
    "not_found": 404,
}

# Global state
current_forest: FamilyForest | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - create the forest for this process."""
    global current_forest

    logger.info(f"Initializing family forest (root name {ME_NAME!r})...")
    current_forest = FamilyForest(me_name=ME_NAME)
    logger.info("✓ Family forest ready")

    yield

    logger.info(f"Discarding family forest with {len(current_forest)} node(s)")
    current_forest = None


# Create FastAPI app
app = FastAPI(
    title="FamilyTree",
    description="Genealogical forest editor with protected root and JSON export",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request/Response models
class NameRequest(BaseModel):
    """Name for a node about to be created."""
    name: str = Field(default="", description="Name of the new person. Must not be blank.")


class OperationResponse(BaseModel):
    """Outcome of a successful mutation."""
    success: bool
    message: str
    error: str | None = None
    node: dict | None = None
    removed: list[int] = []


class ExportResponse(BaseModel):
    """Id of the exported root and the pretty-printed JSON text."""
    root_id: int
    content: str


def _require_forest() -> FamilyForest:
    if current_forest is None:
        logger.error("Family forest not initialized")
        raise HTTPException(status_code=503, detail="Family forest not initialized")
    return current_forest


def _operation_response(result: dict) -> OperationResponse:
    """Turn an engine result into a response, or raise for a failed operation."""
    if not result["success"]:
        status_code = ERROR_STATUS_CODES.get(result["error"], 400)
        logger.warning(f"Responding {status_code}: {result['message']}")
        raise HTTPException(status_code=status_code, detail=result["message"])
    return OperationResponse(**result)


# Endpoints

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    logger.debug("Health check requested")
    forest = current_forest
    return {
        "status": "healthy",
        "forest_loaded": forest is not None,
        "node_count": len(forest) if forest is not None else 0,
        "consistent": forest is not None and not check_forest_consistency(forest),
    }


@app.get("/nodes")
async def list_nodes():
    """Get all nodes in store order."""
    forest = _require_forest()
    nodes = get_all_nodes(forest)
    logger.info(f"Returning {len(nodes)} node(s)")
    return {"nodes": nodes}


@app.get("/nodes/{node_id}")
async def read_node(node_id: int):
    """Get a single node."""
    forest = _require_forest()
    node = get_node(forest, node_id)
    if node is None:
        logger.warning(f"Node {node_id} not found")
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    return get_node_data(node)


@app.post("/nodes/{node_id}/parent", response_model=OperationResponse)
async def create_parent(node_id: int, request: NameRequest):
    """Add a parent to a node that has none."""
    forest = _require_forest()
    logger.info(f"Add parent {request.name!r} to node {node_id}")
    return _operation_response(add_parent(forest, node_id, request.name))


@app.post("/nodes/{node_id}/sibling", response_model=OperationResponse)
async def create_sibling(node_id: int, request: NameRequest):
    """Add a sibling under the node's parent."""
    forest = _require_forest()
    logger.info(f"Add sibling {request.name!r} to node {node_id}")
    return _operation_response(add_sibling(forest, node_id, request.name))


@app.post("/nodes/{node_id}/child", response_model=OperationResponse)
async def create_child(node_id: int, request: NameRequest):
    """Add a child to a node."""
    forest = _require_forest()
    logger.info(f"Add child {request.name!r} to node {node_id}")
    return _operation_response(add_child(forest, node_id, request.name))


@app.delete("/nodes/{node_id}", response_model=OperationResponse)
async def remove_node(node_id: int):
    """Delete a node and its subtree, then sweep orphans."""
    forest = _require_forest()
    logger.info(f"Delete node {node_id}")
    return _operation_response(delete_node(forest, node_id))


@app.post("/export", response_model=ExportResponse)
async def create_export(roots_only: bool = Query(default=False)):
    """Export the largest tree as pretty-printed JSON."""
    forest = _require_forest()
    logger.info(f"Exporting largest tree (roots_only={roots_only})")

    try:
        content = export_tree(forest, indent=EXPORT_INDENT, roots_only=roots_only)
    except EmptyForestError as e:
        logger.warning(f"Export failed: {str(e)}")
        raise HTTPException(status_code=409, detail=str(e))

    return ExportResponse(root_id=forest.exported_root_id, content=content)


@app.get("/export")
async def read_export():
    """Get the text of the last export."""
    forest = _require_forest()
    if not forest.exported_tree_json:
        logger.warning("Export requested before any tree was exported")
        raise HTTPException(status_code=404, detail="No tree exported yet")
    return {"content": forest.exported_tree_json}


@app.post("/reset")
async def reset_forest():
    """Replace the forest with a fresh one holding only the root node."""
    global current_forest

    _require_forest()
    current_forest = FamilyForest(me_name=ME_NAME)
    logger.info("Family forest reset")
    return {"nodes": get_all_nodes(current_forest)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
