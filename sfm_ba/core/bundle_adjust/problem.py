"""
Sparse nonlinear least squares problem for bundle adjustment

A Problem holds parameter blocks (numpy buffers owned by the caller and
updated in place when a solution is written back) and residual blocks
connecting one intrinsics, one extrinsics and one landmark block.

Blocks can be held fully constant or partially constant (a subset of
their entries). Only the remaining free entries are exposed to the solver
as the flat vector x.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.sparse import lil_matrix

from .loss import LossFunction
from .reprojection import ReprojectionError, create_cost_func, reprojection_residuals

if TYPE_CHECKING:
    from ..types import Track
    from .config import CameraOptions
    from .parameters import CameraParameters

logger = logging.getLogger(__name__)


class BlockType(Enum):
    """Kinds of parameter blocks"""
    INTRINSICS = "intrinsics"
    EXTRINSICS = "extrinsics"
    LANDMARK = "landmark"


ParameterKey = Tuple[BlockType, int]


def intrinsics_key(group: int) -> ParameterKey:
    return (BlockType.INTRINSICS, group)


def extrinsics_key(frame_id: int) -> ParameterKey:
    return (BlockType.EXTRINSICS, frame_id)


def landmark_key(track_id: int) -> ParameterKey:
    return (BlockType.LANDMARK, track_id)


@dataclass
class ParameterBlock:
    """One parameter block and its constraints"""

    values: np.ndarray  # caller-owned buffer
    constant: bool = False
    constant_indices: Tuple[int, ...] = ()
    offset: int = 0  # position in the full parameter vector

    @property
    def size(self) -> int:
        return self.values.size

    def free_mask(self) -> np.ndarray:
        mask = np.ones(self.size, dtype=bool)
        if self.constant:
            mask[:] = False
        elif self.constant_indices:
            mask[list(self.constant_indices)] = False
        return mask


@dataclass
class ResidualBlock:
    """Reprojection cost bound to its three parameter blocks"""

    cost: ReprojectionError
    parameter_keys: Tuple[ParameterKey, ParameterKey, ParameterKey]


@dataclass
class _ResidualGroup:
    """Residual blocks sharing a distortion model, as gather indices"""

    cost_template: ReprojectionError
    rows: np.ndarray  # residual block indices, shape (n,)
    intrinsics_idx: np.ndarray  # (n, 5 + D)
    extrinsics_idx: np.ndarray  # (n, 6)
    landmark_idx: np.ndarray  # (n, 3)
    observed: np.ndarray  # (n, 2)


class Problem:
    """
    Bundle adjustment problem

    All residual blocks share a single robust loss instance. The problem
    takes it with the first residual block; a problem without residual
    blocks holds no loss.
    """

    def __init__(self):
        self.parameter_blocks: Dict[ParameterKey, ParameterBlock] = {}
        self.residual_blocks: List[ResidualBlock] = []
        self.loss: Optional[LossFunction] = None
        self._layout = None

    # ------------------------------------------------------------------
    # Construction

    def add_parameter_block(self, key: ParameterKey, values: np.ndarray) -> None:
        """Register a parameter buffer; re-adding the same buffer is a no-op"""
        block = self.parameter_blocks.get(key)
        if block is not None:
            if block.values is not values:
                raise ValueError(f"Parameter block {key} already registered with a different buffer")
            return

        if not isinstance(values, np.ndarray) or values.dtype != np.float64 or values.ndim != 1:
            raise ValueError(f"Parameter block {key} must be a 1-D float64 array")

        self.parameter_blocks[key] = ParameterBlock(values=values)
        self._layout = None

    def add_residual_block(
        self,
        cost: ReprojectionError,
        loss: Optional[LossFunction],
        *blocks: Tuple[ParameterKey, np.ndarray],
    ) -> int:
        """
        Add a residual term over (intrinsics, extrinsics, landmark) blocks

        Args:
            cost: Reprojection cost of one observation
            loss: Robust loss; must be the same instance for every block
            blocks: (key, buffer) pairs in cost parameter order

        Returns:
            Index of the new residual block
        """
        sizes = cost.parameter_block_sizes()
        if len(blocks) != len(sizes):
            raise ValueError(f"Expected {len(sizes)} parameter blocks, got {len(blocks)}")

        for (key, values), size in zip(blocks, sizes):
            if values.size != size:
                raise ValueError(f"Parameter block {key} has size {values.size}, expected {size}")

        if loss is not None:
            if self.loss is None:
                self.loss = loss
            elif loss is not self.loss:
                raise ValueError("All residual blocks of a problem must share one loss function")

        for key, values in blocks:
            self.add_parameter_block(key, values)

        self.residual_blocks.append(
            ResidualBlock(cost=cost, parameter_keys=tuple(key for key, _ in blocks))
        )
        self._layout = None
        return len(self.residual_blocks) - 1

    def _block(self, key: ParameterKey) -> ParameterBlock:
        block = self.parameter_blocks.get(key)
        if block is None:
            raise ValueError(f"Parameter block {key} is not part of the problem")
        return block

    def set_parameter_block_constant(self, key: ParameterKey) -> None:
        self._block(key).constant = True
        self._layout = None

    def set_parameter_block_variable(self, key: ParameterKey) -> None:
        self._block(key).constant = False
        self._layout = None

    def set_parameterization(self, key: ParameterKey, constant_indices: Iterable[int]) -> None:
        """Hold a subset of a block's entries constant"""
        block = self._block(key)
        indices = tuple(sorted(set(int(i) for i in constant_indices)))
        if indices and (indices[0] < 0 or indices[-1] >= block.size):
            raise ValueError(
                f"Constant indices {indices} out of range for block {key} of size {block.size}"
            )
        block.constant_indices = indices
        self._layout = None

    # ------------------------------------------------------------------
    # Queries

    def has_parameter_block(self, key: ParameterKey) -> bool:
        return key in self.parameter_blocks

    def is_parameter_block_constant(self, key: ParameterKey) -> bool:
        return self._block(key).constant

    def is_parameter_block_varying(self, key: ParameterKey) -> bool:
        """True if the block is in the problem and has at least one free entry"""
        block = self.parameter_blocks.get(key)
        return block is not None and bool(block.free_mask().any())

    @property
    def num_residual_blocks(self) -> int:
        return len(self.residual_blocks)

    @property
    def num_residuals(self) -> int:
        return sum(rb.cost.num_residuals for rb in self.residual_blocks)

    @property
    def num_parameter_blocks(self) -> int:
        return len(self.parameter_blocks)

    @property
    def num_parameters(self) -> int:
        return sum(block.size for block in self.parameter_blocks.values())

    @property
    def num_free_parameters(self) -> int:
        return int(self._get_layout()["free_idx"].size)

    # ------------------------------------------------------------------
    # Flat vector interface for the solver

    def _get_layout(self) -> dict:
        """Offsets, free entries and gather indices; rebuilt after changes"""
        if self._layout is not None:
            return self._layout

        offset = 0
        masks = []
        for block in self.parameter_blocks.values():
            block.offset = offset
            offset += block.size
            masks.append(block.free_mask())

        free_mask = np.concatenate(masks) if masks else np.zeros(0, dtype=bool)
        free_idx = np.flatnonzero(free_mask)
        full_to_free = np.full(offset, -1, dtype=np.int64)
        full_to_free[free_idx] = np.arange(free_idx.size)

        grouped: Dict[object, List[int]] = {}
        for i, rb in enumerate(self.residual_blocks):
            grouped.setdefault(rb.cost.distortion_type, []).append(i)

        groups = []
        for rows in grouped.values():
            template = self.residual_blocks[rows[0]].cost
            idx = [[], [], []]
            observed = []
            for i in rows:
                rb = self.residual_blocks[i]
                for slot, key in enumerate(rb.parameter_keys):
                    block = self.parameter_blocks[key]
                    idx[slot].append(block.offset + np.arange(block.size))
                observed.append(rb.cost.observed)

            groups.append(_ResidualGroup(
                cost_template=template,
                rows=np.asarray(rows, dtype=np.int64),
                intrinsics_idx=np.asarray(idx[0]),
                extrinsics_idx=np.asarray(idx[1]),
                landmark_idx=np.asarray(idx[2]),
                observed=np.asarray(observed, dtype=np.float64),
            ))

        self._layout = {
            "size": offset,
            "free_idx": free_idx,
            "full_to_free": full_to_free,
            "groups": groups,
        }
        return self._layout

    def full_parameters(self) -> np.ndarray:
        """Current values of all blocks as one vector"""
        self._get_layout()
        if not self.parameter_blocks:
            return np.zeros(0)
        return np.concatenate([block.values for block in self.parameter_blocks.values()])

    def free_parameters(self) -> np.ndarray:
        """Current values of the free entries (the solver's x)"""
        return self.full_parameters()[self._get_layout()["free_idx"]]

    def set_free_parameters(self, x: np.ndarray) -> None:
        """Write solver values back into the caller-owned buffers"""
        layout = self._get_layout()
        if x.size != layout["free_idx"].size:
            raise ValueError(f"Expected {layout['free_idx'].size} free parameters, got {x.size}")

        full = self.full_parameters()
        full[layout["free_idx"]] = x
        for block in self.parameter_blocks.values():
            block.values[:] = full[block.offset:block.offset + block.size]

    def evaluate(self, x: np.ndarray, base: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Residual vector for free parameters x

        Args:
            x: Free parameter values
            base: Full parameter vector providing the constant entries
                (defaults to the current buffer values)

        Returns:
            Residuals, shape (num_residuals,), two per residual block
        """
        layout = self._get_layout()
        theta = self.full_parameters() if base is None else base.copy()
        theta[layout["free_idx"]] = x

        residuals = np.zeros((self.num_residual_blocks, 2))
        for group in layout["groups"]:
            residuals[group.rows] = reprojection_residuals(
                group.cost_template.distortion_type,
                theta[group.intrinsics_idx],
                theta[group.extrinsics_idx],
                theta[group.landmark_idx],
                group.observed,
            )
        return residuals.ravel()

    def cost(self) -> float:
        """0.5 * sum of squared residuals at the current values, no loss applied"""
        residuals = self.evaluate(self.free_parameters())
        return 0.5 * float(residuals @ residuals)

    def jacobian_sparsity(self) -> lil_matrix:
        """
        Sparsity pattern of the Jacobian over free parameters

        Each residual block depends on:
        - 1 intrinsics block (5 + D params)
        - 1 extrinsics block (6 params)
        - 1 landmark block (3 params)
        """
        layout = self._get_layout()
        full_to_free = layout["full_to_free"]
        sparsity = lil_matrix((self.num_residuals, layout["free_idx"].size), dtype=int)

        for i, rb in enumerate(self.residual_blocks):
            for key in rb.parameter_keys:
                block = self.parameter_blocks[key]
                cols = full_to_free[block.offset:block.offset + block.size]
                cols = cols[cols >= 0]
                if cols.size == 0:
                    continue
                sparsity[2 * i, cols] = 1
                sparsity[2 * i + 1, cols] = 1

        return sparsity


def apply_constant_intrinsics(
    problem: Problem,
    num_groups: int,
    constant_intrinsics: Sequence[int],
    num_intrinsics: int,
) -> None:
    """
    Hold intrinsics entries constant, once per intrinsics group

    If every entry is constant the whole block is frozen instead of
    building a subset constraint.
    """
    if not constant_intrinsics:
        return

    for group in range(num_groups):
        key = intrinsics_key(group)
        if not problem.has_parameter_block(key):
            continue
        if len(constant_intrinsics) >= num_intrinsics:
            problem.set_parameter_block_constant(key)
        else:
            problem.set_parameterization(key, constant_intrinsics)


def build_problem(
    camera_params: "CameraParameters",
    landmark_params: Dict[int, np.ndarray],
    tracks: Sequence["Track"],
    camera_options: "CameraOptions",
    loss: Optional[LossFunction],
    fixed_frames: Iterable[int] = (),
    fixed_landmarks: Iterable[int] = (),
) -> Problem:
    """
    Add one reprojection residual per usable track observation

    Tracks without a landmark and observations in frames without a camera
    are skipped silently.
    """
    problem = Problem()
    distortion_type = camera_options.lens_distortion_type

    skipped_tracks = 0
    skipped_observations = 0

    for track in tracks:
        point = landmark_params.get(track.id)
        if point is None:
            skipped_tracks += 1
            continue

        for state in track.history:
            extrinsics = camera_params.extrinsics.get(state.frame_id)
            if extrinsics is None:
                skipped_observations += 1
                continue

            group = camera_params.frame_to_intrinsics[state.frame_id]
            x, y = state.loc
            problem.add_residual_block(
                create_cost_func(distortion_type, x, y),
                loss,
                (intrinsics_key(group), camera_params.intrinsics[group]),
                (extrinsics_key(state.frame_id), extrinsics),
                (landmark_key(track.id), point),
            )

    if skipped_tracks or skipped_observations:
        logger.debug(
            f"Skipped {skipped_tracks} tracks without landmarks and "
            f"{skipped_observations} observations without cameras"
        )

    apply_constant_intrinsics(
        problem,
        camera_params.num_groups(),
        camera_options.enumerate_constant_intrinsics(),
        camera_options.num_intrinsics,
    )

    for frame_id in fixed_frames:
        key = extrinsics_key(frame_id)
        if problem.has_parameter_block(key):
            problem.set_parameter_block_constant(key)

    for track_id in fixed_landmarks:
        key = landmark_key(track_id)
        if problem.has_parameter_block(key):
            problem.set_parameter_block_constant(key)

    return problem
