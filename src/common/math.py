from enum import StrEnum
import numpy
from pydantic import BaseModel, Field, model_validator
from scipy.spatial.transform import Rotation
from typing import Final


_DEFAULT_EPSILON: Final[float] = 0.0001
_ORTHONORMALITY_TOLERANCE: Final[float] = 1e-6


class TransformMode(StrEnum):
    RIGID: Final[str] = "rigid"
    AFFINE: Final[str] = "affine"


class Transform(BaseModel):
    """
    Geometric map x -> linear * x + translation.
    In RIGID mode the linear part is a proper rotation (orthonormal, determinant +1).
    In AFFINE mode the linear part is unconstrained.
    """
    mode: TransformMode = Field(default=TransformMode.RIGID)
    linear: list[list[float]] = Field()  # [row][col]
    translation: list[float] = Field()

    @model_validator(mode="after")
    def _check_shapes(self) -> 'Transform':
        dimension: int = len(self.translation)
        if dimension < 1:
            raise ValueError("Transform must have a dimension of at least 1.")
        if len(self.linear) != dimension:
            raise ValueError(f"Expected linear part to have {dimension} rows. Got {len(self.linear)}.")
        for i, row in enumerate(self.linear):
            if len(row) != dimension:
                raise ValueError(f"Expected linear row {i} to have {dimension} col. Got {len(row)}.")
        if self.mode == TransformMode.RIGID:
            linear: numpy.ndarray = numpy.asarray(self.linear, dtype="float64")
            if not numpy.allclose(
                numpy.matmul(linear.T, linear),
                numpy.identity(dimension),
                rtol=0.0,
                atol=_ORTHONORMALITY_TOLERANCE
            ) or numpy.linalg.det(linear) < 0.0:
                raise ValueError(
                    "Linear part of a rigid transform must be a proper rotation (orthonormal, determinant +1).")
        return self

    def __mul__(self, other) -> 'Transform':
        """
        Composition, such that (a * b) applied to x equals a applied to (b applied to x).
        """
        if not isinstance(other, Transform):
            raise ValueError
        if other.get_dimension() != self.get_dimension():
            raise ValueError("Cannot compose transforms of differing dimensions.")
        mode: TransformMode = TransformMode.RIGID
        if self.mode != TransformMode.RIGID or other.mode != TransformMode.RIGID:
            mode = TransformMode.AFFINE
        self_linear: numpy.ndarray = self.get_linear()
        return Transform.from_numpy_arrays(
            linear=numpy.matmul(self_linear, other.get_linear()),
            translation=numpy.matmul(self_linear, other.get_translation()) + self.get_translation(),
            mode=mode)

    def apply_to_points(
        self,
        points: numpy.ndarray | list[list[float]]  # [point_index][dimension]
    ) -> numpy.ndarray:
        points = numpy.asarray(points, dtype="float64")
        if points.ndim != 2 or points.shape[1] != self.get_dimension():
            raise ValueError(f"Expected points of shape (N, {self.get_dimension()}). Got {points.shape}.")
        return numpy.matmul(points, self.get_linear().T) + self.get_translation()

    def apply_to_normals(
        self,
        normals: numpy.ndarray | list[list[float]]  # [point_index][dimension]
    ) -> numpy.ndarray:
        """
        Rigid transforms rotate normals. Affine transforms use the inverse transpose of the
        linear part, and the results are renormalized to unit length.
        """
        normals = numpy.asarray(normals, dtype="float64")
        if normals.ndim != 2 or normals.shape[1] != self.get_dimension():
            raise ValueError(f"Expected normals of shape (N, {self.get_dimension()}). Got {normals.shape}.")
        if self.mode == TransformMode.RIGID:
            return numpy.matmul(normals, self.get_linear().T)
        normal_matrix: numpy.ndarray = numpy.linalg.inv(self.get_linear()).T
        transformed: numpy.ndarray = numpy.matmul(normals, normal_matrix.T)
        norms: numpy.ndarray = numpy.linalg.norm(transformed, axis=1, keepdims=True)
        norms[norms < _DEFAULT_EPSILON * _DEFAULT_EPSILON] = 1.0  # leave zero normals as zero
        return transformed / norms

    def as_numpy_array(self) -> numpy.ndarray:
        """
        Homogeneous matrix of size (dimension+1) x (dimension+1)
        """
        dimension: int = self.get_dimension()
        matrix: numpy.ndarray = numpy.identity(dimension + 1, dtype="float64")
        matrix[0:dimension, 0:dimension] = self.get_linear()
        matrix[0:dimension, dimension] = self.get_translation()
        return matrix

    def get_dimension(self) -> int:
        return len(self.translation)

    def get_linear(self) -> numpy.ndarray:
        return numpy.asarray(self.linear, dtype="float64")

    def get_translation(self) -> numpy.ndarray:
        return numpy.asarray(self.translation, dtype="float64")

    def inverse(self) -> 'Transform':
        linear: numpy.ndarray
        if self.mode == TransformMode.RIGID:
            linear = self.get_linear().T
        else:
            linear = numpy.linalg.inv(self.get_linear())
        return Transform.from_numpy_arrays(
            linear=linear,
            translation=-numpy.matmul(linear, self.get_translation()),
            mode=self.mode)

    def is_identity(
        self,
        tolerance: float = _DEFAULT_EPSILON
    ) -> bool:
        return bool(numpy.allclose(
            self.as_numpy_array(),
            numpy.identity(self.get_dimension() + 1),
            rtol=0.0,
            atol=tolerance))

    @staticmethod
    def identity(
        dimension: int,
        mode: TransformMode = TransformMode.RIGID
    ) -> 'Transform':
        return Transform(
            mode=mode,
            linear=numpy.identity(dimension, dtype="float64").tolist(),
            translation=[0.0] * dimension)

    @staticmethod
    def from_numpy_arrays(
        linear: numpy.ndarray,
        translation: numpy.ndarray,
        mode: TransformMode = TransformMode.RIGID
    ) -> 'Transform':
        return Transform(
            mode=mode,
            linear=numpy.asarray(linear, dtype="float64").tolist(),
            translation=numpy.asarray(translation, dtype="float64").reshape(-1).tolist())

    @staticmethod
    def from_homogeneous_matrix(
        matrix: numpy.ndarray,
        mode: TransformMode = TransformMode.RIGID
    ) -> 'Transform':
        matrix = numpy.asarray(matrix, dtype="float64")
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1] or matrix.shape[0] < 2:
            raise ValueError(f"Expected a square homogeneous matrix. Got shape {matrix.shape}.")
        dimension: int = matrix.shape[0] - 1
        return Transform.from_numpy_arrays(
            linear=matrix[0:dimension, 0:dimension],
            translation=matrix[0:dimension, dimension],
            mode=mode)


class MathUtils:
    """
    static class for reused math-related functions.
    """

    def __init__(self):
        raise RuntimeError("This class is not meant to be initialized.")

    @staticmethod
    def nearest_rotation_matrix(
        matrix: numpy.ndarray
    ) -> numpy.ndarray:
        """
        Closest proper rotation (orthonormal, determinant +1) to the input square matrix,
        in the Frobenius sense. Used to remove drift after repeated compositions.
        """
        u, _, vh = numpy.linalg.svd(numpy.asarray(matrix, dtype="float64"))
        if numpy.linalg.det(numpy.matmul(u, vh)) < 0.0:
            u[:, -1] = -u[:, -1]
        return numpy.matmul(u, vh)

    @staticmethod
    def rotation_matrix_2d(
        angle_radians: float
    ) -> numpy.ndarray:
        cos_angle: float = numpy.cos(angle_radians)
        sin_angle: float = numpy.sin(angle_radians)
        return numpy.asarray(
            [[cos_angle, -sin_angle],
             [sin_angle, cos_angle]],
            dtype="float64")

    @staticmethod
    def rotation_matrix_3d_from_axis_angles(
        angles_radians: numpy.ndarray | list[float]  # rotation about [x, y, z]
    ) -> numpy.ndarray:
        """
        Rz(angles[2]) * Ry(angles[1]) * Rx(angles[0])
        """
        return Rotation.from_euler(
            seq="ZYX",
            angles=[angles_radians[2], angles_radians[1], angles_radians[0]]).as_matrix()

    @staticmethod
    def random_rotation_matrix(
        dimension: int,
        random_generator: numpy.random.Generator
    ) -> numpy.ndarray:
        if dimension == 2:
            return MathUtils.rotation_matrix_2d(random_generator.uniform(-numpy.pi, numpy.pi))
        if dimension == 3:
            return Rotation.random(random_state=random_generator).as_matrix()
        gaussian: numpy.ndarray = random_generator.normal(size=(dimension, dimension))
        return MathUtils.nearest_rotation_matrix(gaussian)
