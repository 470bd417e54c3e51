"""Load captured green meshes into :class:`MeshFragment` values.

Supported formats
-----------------
* **PLY** – via the ``plyfile`` library.  Vertices need ``x``/``y``/``z``;
  ``nx``/``ny``/``nz`` normals are used when present.  Faces are read from
  ``vertex_indices`` (or ``vertex_index``); an optional per-face
  ``classification`` property carries the capture subsystem's labels.
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
from plyfile import PlyData

from puttline.core.types import MeshFragment

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".ply",)


def _faces_to_triangles(faces) -> np.ndarray:
    """Fan-triangulate polygon faces into an (M, 3) index array."""
    tris: list[list[int]] = []
    for face in faces:
        idx = [int(i) for i in face]
        for k in range(1, len(idx) - 1):
            tris.append([idx[0], idx[k], idx[k + 1]])
    return np.asarray(tris, dtype=np.int64).reshape(-1, 3)


def load_ply(path: str | Path) -> MeshFragment:
    """Read a binary or ASCII PLY mesh.

    Raises ``ValueError`` if the file has no face element (a point cloud
    cannot be turned into a surface).
    """
    logger.info(f"📄 Reading PLY mesh {Path(path).name}...")
    ply = PlyData.read(str(path))
    vertex = ply["vertex"]
    positions = np.column_stack(
        [np.asarray(vertex[axis], dtype=np.float64) for axis in ("x", "y", "z")]
    )
    prop_names = [p.name for p in vertex.properties]
    logger.info(f"✅ {len(positions):,} vertices, properties: {prop_names}")

    normals = None
    if all(n in prop_names for n in ("nx", "ny", "nz")):
        normals = np.column_stack(
            [np.asarray(vertex[n], dtype=np.float64) for n in ("nx", "ny", "nz")]
        )
        logger.info(f"🧭 Vertex normals loaded")

    element_names = [el.name for el in ply.elements]
    if "face" not in element_names:
        raise ValueError(f"PLY file '{Path(path).name}' has no faces; a mesh is required")
    face = ply["face"]
    face_props = [p.name for p in face.properties]
    index_prop = next((n for n in ("vertex_indices", "vertex_index") if n in face_props), None)
    if index_prop is None:
        raise ValueError(f"PLY face element has no vertex index list (have {face_props})")

    raw_faces = face[index_prop]
    triangles = _faces_to_triangles(raw_faces)
    classifications = None
    if "classification" in face_props:
        labels = np.asarray(face["classification"], dtype=np.int64)
        # Fan triangulation repeats a face's label for each of its triangles
        repeats = np.array([max(len(f) - 2, 0) for f in raw_faces], dtype=np.int64)
        classifications = np.repeat(labels, repeats)
        logger.info(f"🏷️  Face classifications loaded")
    logger.info(f"🔺 {len(triangles):,} triangles")

    return MeshFragment(
        vertices=positions,
        triangles=triangles,
        normals=normals,
        classifications=classifications,
    )


def load_mesh(path: str | Path) -> MeshFragment:
    """Auto-detect format and return a :class:`MeshFragment`.

    Raises ``ValueError`` for unsupported extensions.
    """
    p = Path(path)
    ext = p.suffix.lower()
    if ext == ".ply":
        return load_ply(p)
    raise ValueError(
        f"Unsupported mesh format '{ext}'. Supported: {', '.join(SUPPORTED_SUFFIXES)}"
    )
