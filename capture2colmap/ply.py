"""
PLY files: Gaussian splats and colored point clouds.

The splat layout follows the standard 3DGS PLY format, one 'vertex'
element with float32 properties in this order:

- x, y, z: Gaussian centers
- nx, ny, nz: normals (optional, zero in practice)
- f_dc_0..2: DC spherical harmonics
- f_rest_*: higher-order SH, channel-major (all R, then all G, then all B)
- opacity: opacity logit
- scale_0..2: log-scale parameters
- rot_0..3: quaternion (wxyz)

The body is binary little-endian with fixed-width records, so a written
file must be exactly header + count * record_size bytes. write_splats
checks that before returning, taking the count from the header it wrote
(see ply_info). Point clouds may also be written as ASCII.

No coordinate conversion happens here. Splats are stored in whatever
world convention the caller provides (OpenCV for COLMAP-trained models).
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from .errors import ConfigurationError, DatasetIOError, FormatError
from .exporter import AtomicFile

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# SH DC coefficient: 1 / (2 * sqrt(pi))
SH_C0 = 0.28209479177387814

DEFAULT_SH_REST = 15  # degree 3: 16 coeffs per channel, 1 DC + 15 rest
FLOAT_SIZE = 4

END_HEADER = b"end_header\n"


def _import_plyfile():
    try:
        import plyfile
    except ImportError:
        raise ImportError(
            "plyfile is required for reading and writing PLY files. "
            "Install with: pip install plyfile"
        )
    return plyfile


def color_to_sh_dc(colors: NDArray) -> NDArray[np.float32]:
    """
    Convert RGB colors to DC spherical harmonics.

    Args:
        colors: (N, 3) colors, uint8 in [0, 255] or float in [0, 1]

    Returns:
        (N, 3) DC coefficients
    """
    colors = np.asarray(colors)
    if colors.dtype == np.uint8:
        rgb = colors.astype(np.float32) / 255.0
    else:
        rgb = colors.astype(np.float32)
    return ((rgb - 0.5) / SH_C0).astype(np.float32)


def sh_dc_to_color(sh_dc: NDArray) -> NDArray[np.uint8]:
    """Convert DC spherical harmonics to (N, 3) uint8 RGB."""
    rgb = np.asarray(sh_dc, dtype=np.float32) * SH_C0 + 0.5
    rgb = np.clip(rgb, 0.0, 1.0)
    return np.round(rgb * 255).astype(np.uint8)


def record_size(normals: bool = True, n_sh_rest: int = DEFAULT_SH_REST) -> int:
    """
    Bytes per splat record.

    248 with normals and degree-3 SH, 236 without normals.
    """
    n_floats = 3 + (3 if normals else 0) + 3 + 3 * n_sh_rest + 1 + 3 + 4
    return n_floats * FLOAT_SIZE


def property_names(normals: bool = True, n_sh_rest: int = DEFAULT_SH_REST) -> List[str]:
    """Vertex property names in on-disk order."""
    names = ["x", "y", "z"]
    if normals:
        names += ["nx", "ny", "nz"]
    names += [f"f_dc_{i}" for i in range(3)]
    names += [f"f_rest_{i}" for i in range(3 * n_sh_rest)]
    names.append("opacity")
    names += [f"scale_{i}" for i in range(3)]
    names += [f"rot_{i}" for i in range(4)]
    return names


@dataclass
class GaussianSplats:
    """
    Gaussian splat primitives as parallel arrays.

    Attributes:
        means: (N, 3) Gaussian centers
        sh_dc: (N, 3) DC spherical harmonics
        sh_rest: (N, K, 3) higher-order SH, coefficient-major
        opacities: (N,) opacity logits
        scales: (N, 3) log-scales
        rotations: (N, 4) quaternions (wxyz)
        normals: (N, 3) normals, or None to omit them from the file
    """

    means: NDArray[np.float32]
    sh_dc: NDArray[np.float32]
    sh_rest: NDArray[np.float32]
    opacities: NDArray[np.float32]
    scales: NDArray[np.float32]
    rotations: NDArray[np.float32]
    normals: Optional[NDArray[np.float32]] = None

    def __post_init__(self):
        self.means = np.asarray(self.means, dtype=np.float32).reshape(-1, 3)
        n = len(self.means)
        self.sh_dc = np.asarray(self.sh_dc, dtype=np.float32).reshape(n, 3)
        self.sh_rest = np.asarray(self.sh_rest, dtype=np.float32)
        if self.sh_rest.ndim != 3:
            # Flat (N, 3K) rows, channel-major like the file
            k = self.sh_rest.size // (3 * n) if n else 0
            self.sh_rest = self.sh_rest.reshape(n, 3, k).transpose(0, 2, 1).copy()
        self.opacities = np.asarray(self.opacities, dtype=np.float32).reshape(n)
        self.scales = np.asarray(self.scales, dtype=np.float32).reshape(n, 3)
        self.rotations = np.asarray(self.rotations, dtype=np.float32).reshape(n, 4)
        if self.normals is not None:
            self.normals = np.asarray(self.normals, dtype=np.float32).reshape(n, 3)

    @property
    def n_sh_rest(self) -> int:
        return self.sh_rest.shape[1]

    @property
    def sh_degree(self) -> int:
        return int(round(np.sqrt(1 + self.n_sh_rest))) - 1

    @property
    def has_normals(self) -> bool:
        return self.normals is not None

    @property
    def record_size(self) -> int:
        return record_size(self.has_normals, self.n_sh_rest)

    def colors(self) -> NDArray[np.uint8]:
        return sh_dc_to_color(self.sh_dc)

    def get_bounds(self) -> Tuple[NDArray[np.float32], NDArray[np.float32]]:
        """
        Axis-aligned bounds of the Gaussian centers.

        Note:
            Uses only the centers, ignoring the Gaussians' extents.
        """
        return self.means.min(axis=0), self.means.max(axis=0)

    def __len__(self) -> int:
        return len(self.means)

    def __repr__(self) -> str:
        return f"GaussianSplats(gaussians={len(self)}, sh_degree={self.sh_degree})"


def splats_from_point_cloud(
    points: NDArray[np.float64],
    colors: Optional[NDArray[np.uint8]] = None,
    initial_scale: float = -5.0,
    initial_opacity: float = 0.9,
    n_sh_rest: int = DEFAULT_SH_REST,
    normals: bool = True
) -> GaussianSplats:
    """
    Initial splats from a point cloud, one Gaussian per point.

    Rotations start at identity, scales at initial_scale (log-space) and
    opacities at logit(initial_opacity). Higher-order SH start at zero.

    Args:
        points: (N, 3) positions
        colors: (N, 3) uint8 colors, gray if omitted
        initial_scale: Log-scale for all three axes
        initial_opacity: Opacity in (0, 1)
        n_sh_rest: Higher-order SH coefficients per channel
        normals: Whether to include (zero) normals

    Raises:
        ConfigurationError: If initial_opacity is outside (0, 1)
    """
    if not 0.0 < initial_opacity < 1.0:
        raise ConfigurationError(f"Initial opacity must be in (0, 1), got {initial_opacity}")

    points = np.asarray(points, dtype=np.float32).reshape(-1, 3)
    n = len(points)
    if colors is None:
        colors = np.full((n, 3), 128, dtype=np.uint8)

    rotations = np.zeros((n, 4), dtype=np.float32)
    rotations[:, 0] = 1.0

    return GaussianSplats(
        means=points,
        sh_dc=color_to_sh_dc(colors),
        sh_rest=np.zeros((n, n_sh_rest, 3), dtype=np.float32),
        opacities=np.full(n, np.log(initial_opacity / (1.0 - initial_opacity)), dtype=np.float32),
        scales=np.full((n, 3), initial_scale, dtype=np.float32),
        rotations=rotations,
        normals=np.zeros((n, 3), dtype=np.float32) if normals else None,
    )


def header_length(path: PathLike) -> int:
    """
    Byte length of a PLY header, including the 'end_header' line.

    Raises:
        FormatError: If the file has no end_header line
    """
    with open(path, "rb") as f:
        head = b""
        while END_HEADER not in head:
            chunk = f.read(4096)
            if not chunk:
                raise FormatError(f"No end_header line in {path}")
            head += chunk
    return head.index(END_HEADER) + len(END_HEADER)


@dataclass
class PlyInfo:
    """
    Header summary of a PLY file.

    Attributes:
        format: 'ascii', 'binary_little_endian' or 'binary_big_endian'
        elements: Element name to declared count, in header order
        properties: Property names of the 'vertex' element
        header_size: Header length in bytes, including 'end_header'
    """
    format: str
    elements: Dict[str, int]
    properties: List[str]
    header_size: int

    @property
    def count(self) -> int:
        """Declared vertex count ('element vertex N')."""
        return self.elements.get("vertex", 0)

    @property
    def is_binary(self) -> bool:
        return self.format != "ascii"

    @property
    def is_splat(self) -> bool:
        return all(name in self.properties for name in ("f_dc_0", "opacity", "rot_0"))


def ply_info(path: PathLike) -> PlyInfo:
    """
    Summarize a PLY file's header using plyfile.

    Raises:
        FormatError: If the header does not parse or the body is shorter
            than the header declares
    """
    plyfile = _import_plyfile()

    try:
        data = plyfile.PlyData.read(str(path))
    except plyfile.PlyParseError as e:
        raise FormatError(f"Invalid PLY file {path}: {e}") from e

    if data.text:
        fmt = "ascii"
    elif data.byte_order == ">":
        fmt = "binary_big_endian"
    else:
        fmt = "binary_little_endian"

    elements = {element.name: element.count for element in data.elements}
    properties = [p.name for p in data["vertex"].properties] if "vertex" in elements else []
    return PlyInfo(format=fmt, elements=elements, properties=properties, header_size=header_length(path))


def estimate_file_size(count: int, normals: bool = True, n_sh_rest: int = DEFAULT_SH_REST) -> int:
    """
    Approximate splat file size in bytes.

    The body is exact; the header is built the same way write_splats
    builds it, so the total matches for files this module writes.
    """
    names = property_names(normals, n_sh_rest)
    header = (
        "ply\nformat binary_little_endian 1.0\n"
        f"element vertex {count}\n"
        + "".join(f"property float {name}\n" for name in names)
        + "end_header\n"
    )
    return len(header.encode("ascii")) + count * record_size(normals, n_sh_rest)


def _splat_vertex_array(splats: GaussianSplats) -> np.ndarray:
    names = property_names(splats.has_normals, splats.n_sh_rest)
    vertex = np.empty(len(splats), dtype=[(name, "<f4") for name in names])

    for axis, name in enumerate("xyz"):
        vertex[name] = splats.means[:, axis]
    if splats.has_normals:
        for axis, name in enumerate(("nx", "ny", "nz")):
            vertex[name] = splats.normals[:, axis]
    for c in range(3):
        vertex[f"f_dc_{c}"] = splats.sh_dc[:, c]

    n_rest = splats.n_sh_rest
    for c in range(3):
        for i in range(n_rest):
            vertex[f"f_rest_{i + c * n_rest}"] = splats.sh_rest[:, i, c]

    vertex["opacity"] = splats.opacities
    for i in range(3):
        vertex[f"scale_{i}"] = splats.scales[:, i]
    for i in range(4):
        vertex[f"rot_{i}"] = splats.rotations[:, i]
    return vertex


def _expected_size(path: Path, count: int, record: int) -> int:
    info = ply_info(path)
    if info.count != count:
        raise FormatError(f"{path} declares {info.count} vertices, expected {count}")
    return info.header_size + info.count * record


def write_splats(path: PathLike, splats: GaussianSplats) -> Path:
    """
    Write splats as a binary little-endian PLY.

    The file is written to '<name>.partial', its header is read back, and
    its size is checked against header length + declared count *
    record_size before it is renamed into place.

    Raises:
        FormatError: If the written size does not match the record layout
        DatasetIOError: On filesystem errors
    """
    plyfile = _import_plyfile()

    vertex = _splat_vertex_array(splats)
    element = plyfile.PlyElement.describe(vertex, "vertex")
    ply = plyfile.PlyData([element], text=False, byte_order="<")

    out = AtomicFile(path, "wb")
    handle = out.open()
    try:
        ply.write(handle)
        handle.flush()
        result = out.commit(_expected_size(out.partial_path, len(splats), splats.record_size))
    except OSError as e:
        out.abort()
        if isinstance(e, DatasetIOError):
            raise
        raise DatasetIOError(f"Failed to write {path}: {e}") from e
    except Exception:
        out.abort()
        raise

    logger.debug("Wrote %d splats (%d bytes/record) to %s", len(splats), splats.record_size, result)
    return result


def read_splats(path: PathLike) -> GaussianSplats:
    """
    Load splats from a 3DGS PLY file.

    Normals are kept only if the file has them. Quaternions are
    normalized on load.
    """
    plyfile = _import_plyfile()

    vertex = plyfile.PlyData.read(str(path))["vertex"]
    names = vertex.data.dtype.names

    def stack(keys):
        return np.stack([vertex[k] for k in keys], axis=-1).astype(np.float32)

    means = stack(["x", "y", "z"])
    n = len(means)

    rest_names = [name for name in names if name.startswith("f_rest_")]
    n_rest = len(rest_names) // 3  # 3 channels (RGB)
    sh_rest = np.zeros((n, n_rest, 3), dtype=np.float32)
    for i in range(n_rest):
        for c in range(3):
            sh_rest[:, i, c] = vertex[f"f_rest_{i + c * n_rest}"]

    rotations = stack(["rot_0", "rot_1", "rot_2", "rot_3"])
    norms = np.linalg.norm(rotations, axis=-1, keepdims=True)
    rotations = np.divide(rotations, norms, out=rotations.copy(), where=norms > 0)

    return GaussianSplats(
        means=means,
        sh_dc=stack(["f_dc_0", "f_dc_1", "f_dc_2"]),
        sh_rest=sh_rest,
        opacities=np.asarray(vertex["opacity"], dtype=np.float32),
        scales=stack(["scale_0", "scale_1", "scale_2"]),
        rotations=rotations,
        normals=stack(["nx", "ny", "nz"]) if "nx" in names else None,
    )


def validate_splats(splats: GaussianSplats, tolerance: float = 1e-3) -> List[str]:
    """
    Check splats for values that break training.

    Returns:
        List of warning messages (empty if all good)
    """
    warnings = []

    bad_pos = int(np.count_nonzero(~np.all(np.isfinite(splats.means), axis=1)))
    if bad_pos:
        warnings.append(f"{bad_pos} splats have non-finite positions")

    norms = np.linalg.norm(splats.rotations, axis=1)
    bad_rot = int(np.count_nonzero(~np.isfinite(norms) | (np.abs(norms - 1.0) > tolerance)))
    if bad_rot:
        warnings.append(f"{bad_rot} splats have non-unit rotations")

    bad_scale = int(np.count_nonzero(~np.all(np.isfinite(splats.scales), axis=1)))
    if bad_scale:
        warnings.append(f"{bad_scale} splats have non-finite scales")

    bad_opacity = int(np.count_nonzero(~np.isfinite(splats.opacities)))
    if bad_opacity:
        warnings.append(f"{bad_opacity} splats have non-finite opacities")

    for w in warnings:
        logger.warning(w)
    return warnings


def write_point_cloud(
    path: PathLike,
    points: NDArray[np.float64],
    colors: Optional[NDArray[np.uint8]] = None,
    normals: Optional[NDArray[np.float64]] = None,
    text: bool = False
) -> Path:
    """
    Write a colored point cloud PLY (float32 xyz/normals, uchar rgb).

    Binary little-endian by default. With text=True the body is ASCII,
    one vertex per line; its length varies, so only the declared vertex
    count is checked.
    """
    plyfile = _import_plyfile()

    points = np.asarray(points, dtype=np.float32).reshape(-1, 3)
    n = len(points)
    if colors is None:
        colors = np.full((n, 3), 128, dtype=np.uint8)
    if normals is None:
        normals = np.zeros((n, 3), dtype=np.float32)

    dtype = [(name, "<f4") for name in ("x", "y", "z", "nx", "ny", "nz")]
    dtype += [(name, "u1") for name in ("red", "green", "blue")]
    vertex = np.empty(n, dtype=dtype)
    for axis, name in enumerate("xyz"):
        vertex[name] = points[:, axis]
    for axis, name in enumerate(("nx", "ny", "nz")):
        vertex[name] = normals[:, axis]
    for axis, name in enumerate(("red", "green", "blue")):
        vertex[name] = colors[:, axis]

    ply = plyfile.PlyData([plyfile.PlyElement.describe(vertex, "vertex")], text=text, byte_order="<")
    out = AtomicFile(path, "wb")
    handle = out.open()
    try:
        ply.write(handle)
        handle.flush()
        if text:
            _expected_size(out.partial_path, n, 0)
            return out.commit()
        return out.commit(_expected_size(out.partial_path, n, 6 * FLOAT_SIZE + 3))
    except OSError as e:
        out.abort()
        if isinstance(e, DatasetIOError):
            raise
        raise DatasetIOError(f"Failed to write {path}: {e}") from e
    except Exception:
        out.abort()
        raise


def read_point_cloud(path: PathLike) -> Tuple[NDArray[np.float32], NDArray[np.uint8]]:
    """Load (points, colors) from a point cloud PLY."""
    plyfile = _import_plyfile()

    vertex = plyfile.PlyData.read(str(path))["vertex"]
    points = np.stack([vertex["x"], vertex["y"], vertex["z"]], axis=-1).astype(np.float32)
    if "red" in vertex.data.dtype.names:
        colors = np.stack([vertex["red"], vertex["green"], vertex["blue"]], axis=-1).astype(np.uint8)
    else:
        colors = np.full((len(points), 3), 128, dtype=np.uint8)
    return points, colors
