"""FastAPI application for the putting analysis service.

Accepts mesh fragments (as JSON or an uploaded PLY file), reconstructs the
green, and returns surface diagnostics and putting lines.
"""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel as PydanticBaseModel
from pydantic import Field

from puttline.core.settings import PhysicsSettings, SolverSettings
from puttline.core.types import (
    BallPosition,
    HolePosition,
    InsufficientDataError,
    MeshFragment,
    PuttAnalysis,
    Vec3,
)
from puttline.pipeline.loader import SUPPORTED_SUFFIXES, load_mesh
from puttline.pipeline.process import analyze_putt
from puttline.pipeline.reconstruct import reconstruct_surface

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Puttline API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── In-memory store (single-green MVP) ───────────────────────────────
_state: dict = {
    "fragments": None,    # list[MeshFragment] from the last upload, or None
    "source_file": None,  # original filename
    "analysis": None,     # last PuttAnalysis, or None
}


class FragmentPayload(PydanticBaseModel):
    """One mesh fragment as plain JSON arrays."""
    vertices: list[list[float]]
    triangles: list[list[int]]
    normals: Optional[list[list[float]]] = None
    classifications: Optional[list[int]] = None
    transform: Optional[list[list[float]]] = None

    def to_fragment(self) -> MeshFragment:
        data = self.model_dump(exclude_none=True)
        return MeshFragment(**data)


class SurfaceRequest(PydanticBaseModel):
    """Body for /surface.  Omit ``fragments`` to use the last uploaded mesh."""
    fragments: Optional[list[FragmentPayload]] = None


class AnalyzeRequest(PydanticBaseModel):
    """Body for /analyze.  Omit ``fragments`` to use the last uploaded mesh."""
    fragments: Optional[list[FragmentPayload]] = None
    ball: Vec3
    hole: Vec3
    physics: PhysicsSettings = Field(default_factory=PhysicsSettings)
    solver: SolverSettings = Field(default_factory=SolverSettings)


def _fragments(payloads: Optional[list[FragmentPayload]]) -> list[MeshFragment]:
    if payloads is None:
        if _state["fragments"] is None:
            raise HTTPException(404, "No mesh uploaded yet")
        return _state["fragments"]
    try:
        return [p.to_fragment() for p in payloads]
    except ValueError as e:
        raise HTTPException(400, f"Invalid fragment: {e}")


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/upload")
def upload_mesh(file: UploadFile = File(...)):
    """Upload a PLY mesh and keep it for later /analyze calls."""
    if not file.filename:
        raise HTTPException(400, "No filename provided")

    suffix = Path(file.filename).suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise HTTPException(400, f"Unsupported format '{suffix}'. Use .ply")

    logger.info(f"📥 Receiving file: {file.filename}")
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as tmp:
        shutil.copyfileobj(file.file, tmp)
        tmp_path = Path(tmp.name)

    try:
        fragment = load_mesh(tmp_path)
        surface = reconstruct_surface([fragment])
    except ValueError as e:
        logger.warning(f"❌ Unusable mesh: {e}")
        raise HTTPException(422, str(e))
    finally:
        tmp_path.unlink(missing_ok=True)

    _state["fragments"] = [fragment]
    _state["source_file"] = file.filename
    _state["analysis"] = None
    logger.info(f"✅ Stored {file.filename}: {surface.vertex_count:,} vertices")
    return {
        "filename": file.filename,
        "vertex_count": surface.vertex_count,
        "triangle_count": surface.triangle_count,
        "quality_score": surface.quality_score,
    }


@app.post("/surface")
def surface_summary(req: SurfaceRequest):
    """Reconstruct fragments and return mesh-quality diagnostics."""
    fragments = _fragments(req.fragments)
    logger.info(f"🧱 Reconstructing {len(fragments)} fragments")
    try:
        surface = reconstruct_surface(fragments)
    except InsufficientDataError as e:
        raise HTTPException(422, str(e))
    return JSONResponse(content=json.loads(surface.summary().model_dump_json()))


@app.post("/analyze")
def analyze(req: AnalyzeRequest):
    """Find putting lines for one ball/hole pair."""
    fragments = _fragments(req.fragments)
    logger.info(f"⛳ Analysing putt {req.ball} → {req.hole}")
    try:
        analysis = analyze_putt(
            fragments,
            BallPosition(world_position=req.ball),
            HolePosition(world_position=req.hole),
            physics=req.physics,
            solver=req.solver,
        )
    except InsufficientDataError as e:
        logger.warning(f"❌ Insufficient data: {e}")
        raise HTTPException(422, str(e))

    _state["analysis"] = analysis
    logger.info(
        f"✅ {analysis.status.value}: {len(analysis.lines)} lines, "
        f"{analysis.simulations} simulations in {analysis.elapsed:.2f}s"
    )
    return JSONResponse(content=json.loads(analysis.model_dump_json()))


@app.get("/analysis")
def latest_analysis():
    """Return the most recent analysis."""
    if _state["analysis"] is None:
        raise HTTPException(404, "No analysis run yet")
    analysis: PuttAnalysis = _state["analysis"]
    return JSONResponse(content=json.loads(analysis.model_dump_json()))
