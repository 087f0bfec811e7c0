# Joint point-to-point and point-to-plane alignment.
# Rigid case: Gauss-Newton with a small-angle linearization around the current estimate
# (see Low, Linear least-squares optimization for point-to-plane ICP surface registration, 2004).
# Affine case: the model is linear in its unknowns, so a single least-squares solve is exact.
from .parallel_reduction import accumulate_normal_equations
from .point_to_point import \
    affine_point_to_point_normal_equations, \
    affine_transform_from_solution
from .structures import \
    as_point_set, \
    Correspondence, \
    CorrespondenceSet, \
    NormalEquations, \
    TransformEstimationConfiguration, \
    TransformEstimationErrorReason, \
    TransformEstimationResult, \
    UnityWeightEvaluator, \
    WeightEvaluator
from src.common import \
    MathUtils, \
    Transform, \
    TransformMode
import logging
import numpy
from typing import Final, Iterable


logger = logging.getLogger(__name__)


_RIGID_UNKNOWN_COUNT_BY_DIMENSION: Final[dict[int, int]] = {2: 3, 3: 6}

CorrespondenceInput = CorrespondenceSet | Iterable[Correspondence] | None


class _CombinedMetricInput:
    """
    Validated, array-form inputs shared by the rigid and affine solvers.
    """

    dst_points: numpy.ndarray
    dst_normals: numpy.ndarray | None
    src_points: numpy.ndarray
    dimension: int
    point_to_point_correspondences: CorrespondenceSet
    point_to_plane_correspondences: CorrespondenceSet
    has_point_to_point_terms: bool
    has_point_to_plane_terms: bool

    def __init__(
        self,
        dst_points: numpy.ndarray | list[list[float]],
        dst_normals: numpy.ndarray | list[list[float]] | None,
        src_points: numpy.ndarray | list[list[float]],
        point_to_point_correspondences: CorrespondenceInput,
        point_to_plane_correspondences: CorrespondenceInput,
        configuration: TransformEstimationConfiguration
    ):
        self.dst_points = as_point_set(dst_points, label="destination points")
        self.src_points = as_point_set(src_points, label="source points")
        self.dimension = self.dst_points.shape[1]
        if self.src_points.shape[1] != self.dimension:
            raise ValueError(
                f"Destination and source points must be of identical dimension. "
                f"Got {self.dimension} and {self.src_points.shape[1]}.")
        self.dst_normals = None
        if dst_normals is not None:
            self.dst_normals = as_point_set(dst_normals, label="destination normals")
            if self.dst_normals.shape[1] != self.dimension:
                raise ValueError(
                    f"Destination normals must be of dimension {self.dimension}. Got {self.dst_normals.shape[1]}.")
        self.point_to_point_correspondences = CorrespondenceSet.coerce(point_to_point_correspondences)
        self.point_to_plane_correspondences = CorrespondenceSet.coerce(point_to_plane_correspondences)
        self.has_point_to_point_terms = \
            len(self.point_to_point_correspondences) > 0 and configuration.point_to_point_weight > 0.0
        self.has_point_to_plane_terms = \
            len(self.point_to_plane_correspondences) > 0 and configuration.point_to_plane_weight > 0.0

    def get_active_correspondence_count(self) -> int:
        count: int = 0
        if self.has_point_to_point_terms:
            count += len(self.point_to_point_correspondences)
        if self.has_point_to_plane_terms:
            count += len(self.point_to_plane_correspondences)
        return count

    def get_error_reason(self) -> TransformEstimationErrorReason | None:
        """
        None if the inputs are usable. Raises ValueError on out-of-range correspondence indices.
        """
        if not self.has_point_to_point_terms and not self.has_point_to_plane_terms:
            return TransformEstimationErrorReason.EMPTY_OR_UNDERDETERMINED
        if self.has_point_to_plane_terms and \
           (self.dst_normals is None or len(self.dst_normals) != len(self.dst_points)):
            return TransformEstimationErrorReason.INPUT_MISMATCH
        if self.has_point_to_point_terms:
            self.point_to_point_correspondences.validate_indices(
                first_count=len(self.dst_points),
                second_count=len(self.src_points))
        if self.has_point_to_plane_terms:
            self.point_to_plane_correspondences.validate_indices(
                first_count=len(self.dst_points),
                second_count=len(self.src_points))
        return None


def _rigid_point_to_point_normal_equations(
    dst_points: numpy.ndarray,  # [point_index][dimension]
    transformed_src_points: numpy.ndarray,
    weights: numpy.ndarray
) -> NormalEquations:
    # Design column k is the derivative of component k of the transformed source point
    # with respect to (incremental rotation, incremental translation).
    s: numpy.ndarray = transformed_src_points
    point_count, dimension = s.shape
    design: numpy.ndarray
    if dimension == 2:
        design = numpy.zeros((point_count, 3, 2), dtype="float64")
        design[:, 0, 0] = -s[:, 1]
        design[:, 0, 1] = s[:, 0]
        design[:, 1:3, :] = numpy.identity(2)
    else:
        design = numpy.zeros((point_count, 6, 3), dtype="float64")
        design[:, 0, 1] = -s[:, 2]
        design[:, 0, 2] = s[:, 1]
        design[:, 1, 0] = s[:, 2]
        design[:, 1, 2] = -s[:, 0]
        design[:, 2, 0] = -s[:, 1]
        design[:, 2, 1] = s[:, 0]
        design[:, 3:6, :] = numpy.identity(3)
    return NormalEquations.from_design(
        design=design,
        residuals=dst_points - s,
        weights=weights)


def _rigid_point_to_plane_normal_equations(
    dst_points: numpy.ndarray,  # [point_index][dimension]
    dst_normals: numpy.ndarray,
    transformed_src_points: numpy.ndarray,
    weights: numpy.ndarray
) -> NormalEquations:
    s: numpy.ndarray = transformed_src_points
    n: numpy.ndarray = dst_normals
    rotation_part: numpy.ndarray
    if s.shape[1] == 2:
        rotation_part = (s[:, 0] * n[:, 1] - s[:, 1] * n[:, 0])[:, numpy.newaxis]
    else:
        rotation_part = numpy.cross(s, n)
    design: numpy.ndarray = numpy.hstack((rotation_part, n))
    residuals: numpy.ndarray = numpy.sum(n * (dst_points - s), axis=1)
    return NormalEquations.from_design(
        design=design[:, :, numpy.newaxis],
        residuals=residuals[:, numpy.newaxis],
        weights=weights)


def _affine_point_to_plane_normal_equations(
    dst_points: numpy.ndarray,  # [point_index][dimension]
    dst_normals: numpy.ndarray,
    src_points: numpy.ndarray,
    weights: numpy.ndarray
) -> NormalEquations:
    point_count, dimension = src_points.shape
    design: numpy.ndarray = numpy.zeros((point_count, dimension * (dimension + 1)), dtype="float64")
    for j in range(0, dimension):
        design[:, j * dimension:(j + 1) * dimension] = dst_normals[:, j:j + 1] * src_points
    design[:, dimension * dimension:] = dst_normals
    residuals: numpy.ndarray = numpy.sum(dst_normals * dst_points, axis=1)
    return NormalEquations.from_design(
        design=design[:, :, numpy.newaxis],
        residuals=residuals[:, numpy.newaxis],
        weights=weights)


def _accumulate_terms(
    combined_input: _CombinedMetricInput,
    src_points: numpy.ndarray,
    unknown_count: int,
    point_to_point_terms,  # (dst rows, src rows, weights) -> NormalEquations
    point_to_plane_terms,  # (dst rows, normal rows, src rows, weights) -> NormalEquations
    configuration: TransformEstimationConfiguration,
    point_to_point_weight_evaluator: WeightEvaluator,
    point_to_plane_weight_evaluator: WeightEvaluator
) -> NormalEquations:
    system: NormalEquations = NormalEquations.zeros(unknown_count)

    if combined_input.has_point_to_point_terms:
        point_correspondences: CorrespondenceSet = combined_input.point_to_point_correspondences

        def map_point_to_point(begin: int, end: int) -> NormalEquations:
            chunk: CorrespondenceSet = point_correspondences.slice(begin, end)
            weights: numpy.ndarray = \
                configuration.point_to_point_weight * chunk.evaluate_weights(point_to_point_weight_evaluator)
            return point_to_point_terms(
                combined_input.dst_points[chunk.get_index_in_first()],
                src_points[chunk.get_index_in_second()],
                weights)

        system += accumulate_normal_equations(
            item_count=len(point_correspondences),
            unknown_count=unknown_count,
            map_range=map_point_to_point,
            worker_count=configuration.worker_count,
            minimum_chunk_size=configuration.minimum_chunk_size,
            maximum_block_size=configuration.maximum_block_size)

    if combined_input.has_point_to_plane_terms:
        plane_correspondences: CorrespondenceSet = combined_input.point_to_plane_correspondences

        def map_point_to_plane(begin: int, end: int) -> NormalEquations:
            chunk: CorrespondenceSet = plane_correspondences.slice(begin, end)
            weights: numpy.ndarray = \
                configuration.point_to_plane_weight * chunk.evaluate_weights(point_to_plane_weight_evaluator)
            return point_to_plane_terms(
                combined_input.dst_points[chunk.get_index_in_first()],
                combined_input.dst_normals[chunk.get_index_in_first()],
                src_points[chunk.get_index_in_second()],
                weights)

        system += accumulate_normal_equations(
            item_count=len(plane_correspondences),
            unknown_count=unknown_count,
            map_range=map_point_to_plane,
            worker_count=configuration.worker_count,
            minimum_chunk_size=configuration.minimum_chunk_size,
            maximum_block_size=configuration.maximum_block_size)

    return system


def build_rigid_combined_metric_system(
    dst_points: numpy.ndarray | list[list[float]],
    dst_normals: numpy.ndarray | list[list[float]] | None,
    src_points: numpy.ndarray | list[list[float]],
    point_to_point_correspondences: CorrespondenceInput,
    point_to_plane_correspondences: CorrespondenceInput,
    current_transform: Transform | None = None,
    configuration: TransformEstimationConfiguration | None = None,
    point_to_point_weight_evaluator: WeightEvaluator | None = None,
    point_to_plane_weight_evaluator: WeightEvaluator | None = None
) -> NormalEquations:
    """
    Linearized system of one Gauss-Newton step around current_transform.
    Unknowns are (rotation angle, tx, ty) in 2D and (rx, ry, rz, tx, ty, tz) in 3D.
    Inactive term types contribute nothing.
    """
    if configuration is None:
        configuration = TransformEstimationConfiguration()
    combined_input: _CombinedMetricInput = _CombinedMetricInput(
        dst_points=dst_points,
        dst_normals=dst_normals,
        src_points=src_points,
        point_to_point_correspondences=point_to_point_correspondences,
        point_to_plane_correspondences=point_to_plane_correspondences,
        configuration=configuration)
    if combined_input.dimension not in _RIGID_UNKNOWN_COUNT_BY_DIMENSION:
        raise ValueError(f"Rigid combined metric supports 2D and 3D. Got {combined_input.dimension}D.")
    if combined_input.get_error_reason() is not None:
        raise ValueError("Inputs do not define a combined metric system.")
    if current_transform is None:
        current_transform = Transform.identity(dimension=combined_input.dimension)
    return _build_rigid_system(
        combined_input=combined_input,
        current_transform=current_transform,
        configuration=configuration,
        point_to_point_weight_evaluator=point_to_point_weight_evaluator or UnityWeightEvaluator(),
        point_to_plane_weight_evaluator=point_to_plane_weight_evaluator or UnityWeightEvaluator())


def _build_rigid_system(
    combined_input: _CombinedMetricInput,
    current_transform: Transform,
    configuration: TransformEstimationConfiguration,
    point_to_point_weight_evaluator: WeightEvaluator,
    point_to_plane_weight_evaluator: WeightEvaluator
) -> NormalEquations:
    return _accumulate_terms(
        combined_input=combined_input,
        src_points=current_transform.apply_to_points(combined_input.src_points),
        unknown_count=_RIGID_UNKNOWN_COUNT_BY_DIMENSION[combined_input.dimension],
        point_to_point_terms=_rigid_point_to_point_normal_equations,
        point_to_plane_terms=_rigid_point_to_plane_normal_equations,
        configuration=configuration,
        point_to_point_weight_evaluator=point_to_point_weight_evaluator,
        point_to_plane_weight_evaluator=point_to_plane_weight_evaluator)


def build_affine_combined_metric_system(
    dst_points: numpy.ndarray | list[list[float]],
    dst_normals: numpy.ndarray | list[list[float]] | None,
    src_points: numpy.ndarray | list[list[float]],
    point_to_point_correspondences: CorrespondenceInput,
    point_to_plane_correspondences: CorrespondenceInput,
    configuration: TransformEstimationConfiguration | None = None,
    point_to_point_weight_evaluator: WeightEvaluator | None = None,
    point_to_plane_weight_evaluator: WeightEvaluator | None = None
) -> NormalEquations:
    """
    Unknowns are the row-major linear part followed by the translation.
    """
    if configuration is None:
        configuration = TransformEstimationConfiguration()
    combined_input: _CombinedMetricInput = _CombinedMetricInput(
        dst_points=dst_points,
        dst_normals=dst_normals,
        src_points=src_points,
        point_to_point_correspondences=point_to_point_correspondences,
        point_to_plane_correspondences=point_to_plane_correspondences,
        configuration=configuration)
    if combined_input.get_error_reason() is not None:
        raise ValueError("Inputs do not define a combined metric system.")
    return _build_affine_system(
        combined_input=combined_input,
        configuration=configuration,
        point_to_point_weight_evaluator=point_to_point_weight_evaluator or UnityWeightEvaluator(),
        point_to_plane_weight_evaluator=point_to_plane_weight_evaluator or UnityWeightEvaluator())


def _build_affine_system(
    combined_input: _CombinedMetricInput,
    configuration: TransformEstimationConfiguration,
    point_to_point_weight_evaluator: WeightEvaluator,
    point_to_plane_weight_evaluator: WeightEvaluator
) -> NormalEquations:
    dimension: int = combined_input.dimension
    return _accumulate_terms(
        combined_input=combined_input,
        src_points=combined_input.src_points,
        unknown_count=dimension * (dimension + 1),
        point_to_point_terms=affine_point_to_point_normal_equations,
        point_to_plane_terms=_affine_point_to_plane_normal_equations,
        configuration=configuration,
        point_to_point_weight_evaluator=point_to_point_weight_evaluator,
        point_to_plane_weight_evaluator=point_to_plane_weight_evaluator)


def estimate_rigid_transform_combined_metric(
    dst_points: numpy.ndarray | list[list[float]],  # [point_index][dimension]
    dst_normals: numpy.ndarray | list[list[float]] | None,  # [point_index][dimension], per destination point
    src_points: numpy.ndarray | list[list[float]],  # [point_index][dimension]
    point_to_point_correspondences: CorrespondenceInput,
    point_to_plane_correspondences: CorrespondenceInput,
    configuration: TransformEstimationConfiguration | None = None,
    point_to_point_weight_evaluator: WeightEvaluator | None = None,
    point_to_plane_weight_evaluator: WeightEvaluator | None = None,
    initial_transform: Transform | None = None
) -> TransformEstimationResult:
    """
    Rigid transform (2D or 3D) minimizing the weighted sum of squared point-to-point distances
    and squared point-to-plane distances, by iterated linearization.
    :param dst_points: destination points
    :param dst_normals: destination normals, required only when point-to-plane terms are active
    :param src_points: source points
    :param point_to_point_correspondences: (destination index, source index, value)
    :param point_to_plane_correspondences: (destination index, source index, value)
    :param configuration: iteration count, tolerance, global term weights and parallelism
    :param point_to_point_weight_evaluator: per-correspondence weight, default 1
    :param point_to_plane_weight_evaluator: per-correspondence weight, default 1
    :param initial_transform: rigid starting estimate, default identity
    :return: success is True once the update norm drops below the tolerance. error_reason is then
             ILL_CONDITIONED if the system left some degrees of freedom unconstrained, otherwise None
    """
    if configuration is None:
        configuration = TransformEstimationConfiguration()
    combined_input: _CombinedMetricInput = _CombinedMetricInput(
        dst_points=dst_points,
        dst_normals=dst_normals,
        src_points=src_points,
        point_to_point_correspondences=point_to_point_correspondences,
        point_to_plane_correspondences=point_to_plane_correspondences,
        configuration=configuration)
    dimension: int = combined_input.dimension
    if dimension not in _RIGID_UNKNOWN_COUNT_BY_DIMENSION:
        raise ValueError(f"Rigid combined metric supports 2D and 3D. Got {dimension}D.")
    if initial_transform is not None and \
       (initial_transform.mode != TransformMode.RIGID or initial_transform.get_dimension() != dimension):
        raise ValueError(f"Initial transform must be a {dimension}D rigid transform.")

    error_reason: TransformEstimationErrorReason | None = combined_input.get_error_reason()
    if error_reason is not None:
        logger.warning(f"Combined metric inputs are not usable ({error_reason}); returning identity.")
        return TransformEstimationResult.identity_failure(
            dimension=dimension,
            mode=TransformMode.RIGID,
            error_reason=error_reason)

    if point_to_point_weight_evaluator is None:
        point_to_point_weight_evaluator = UnityWeightEvaluator()
    if point_to_plane_weight_evaluator is None:
        point_to_plane_weight_evaluator = UnityWeightEvaluator()

    transform: Transform = initial_transform
    if transform is None:
        transform = Transform.identity(dimension=dimension)
    rotation: numpy.ndarray = transform.get_linear()
    translation: numpy.ndarray = transform.get_translation()

    iteration_count: int = 0
    full_rank: bool = True
    while iteration_count < configuration.max_iterations:
        system: NormalEquations = _build_rigid_system(
            combined_input=combined_input,
            current_transform=transform,
            configuration=configuration,
            point_to_point_weight_evaluator=point_to_point_weight_evaluator,
            point_to_plane_weight_evaluator=point_to_plane_weight_evaluator)
        delta: numpy.ndarray
        delta, full_rank = system.solve(singular_value_threshold=configuration.singular_value_threshold)

        rotation_increment: numpy.ndarray
        translation_increment: numpy.ndarray
        if dimension == 2:
            rotation_increment = MathUtils.rotation_matrix_2d(delta[0])
            translation_increment = delta[1:3]
        else:
            rotation_increment = MathUtils.rotation_matrix_3d_from_axis_angles(delta[0:3])
            translation_increment = delta[3:6]
        rotation = MathUtils.nearest_rotation_matrix(numpy.matmul(rotation_increment, rotation))
        translation = numpy.matmul(rotation_increment, translation) + translation_increment
        transform = Transform.from_numpy_arrays(
            linear=rotation,
            translation=translation,
            mode=TransformMode.RIGID)
        iteration_count += 1

        delta_norm: float = float(numpy.linalg.norm(delta))
        logger.debug(f"Combined metric iteration {iteration_count}: update norm {delta_norm:.3e}.")
        if delta_norm < configuration.convergence_tolerance:
            if not full_rank:
                # converged, but some degrees of freedom were left unconstrained (e.g. sliding along a plane)
                logger.warning("Combined metric converged on a singular system; the result is not unique.")
                return TransformEstimationResult(
                    transform=transform,
                    success=True,
                    error_reason=TransformEstimationErrorReason.ILL_CONDITIONED,
                    iteration_count=iteration_count)
            return TransformEstimationResult(
                transform=transform,
                success=True,
                iteration_count=iteration_count)

    logger.warning(f"Combined metric did not converge within {configuration.max_iterations} iterations.")
    return TransformEstimationResult(
        transform=transform,
        success=False,
        error_reason=TransformEstimationErrorReason.NON_CONVERGENCE,
        iteration_count=iteration_count)


def estimate_affine_transform_combined_metric(
    dst_points: numpy.ndarray | list[list[float]],  # [point_index][dimension]
    dst_normals: numpy.ndarray | list[list[float]] | None,  # [point_index][dimension], per destination point
    src_points: numpy.ndarray | list[list[float]],  # [point_index][dimension]
    point_to_point_correspondences: CorrespondenceInput,
    point_to_plane_correspondences: CorrespondenceInput,
    configuration: TransformEstimationConfiguration | None = None,
    point_to_point_weight_evaluator: WeightEvaluator | None = None,
    point_to_plane_weight_evaluator: WeightEvaluator | None = None
) -> TransformEstimationResult:
    """
    Affine transform (any dimension) minimizing the same objective as the rigid variant,
    in a single solve. Iteration settings in the configuration are not used.
    :return: success requires at least dimension+1 active correspondences and a non-singular system
    """
    if configuration is None:
        configuration = TransformEstimationConfiguration()
    combined_input: _CombinedMetricInput = _CombinedMetricInput(
        dst_points=dst_points,
        dst_normals=dst_normals,
        src_points=src_points,
        point_to_point_correspondences=point_to_point_correspondences,
        point_to_plane_correspondences=point_to_plane_correspondences,
        configuration=configuration)
    dimension: int = combined_input.dimension

    error_reason: TransformEstimationErrorReason | None = combined_input.get_error_reason()
    if error_reason is not None:
        logger.warning(f"Combined metric inputs are not usable ({error_reason}); returning identity.")
        return TransformEstimationResult.identity_failure(
            dimension=dimension,
            mode=TransformMode.AFFINE,
            error_reason=error_reason)

    system: NormalEquations = _build_affine_system(
        combined_input=combined_input,
        configuration=configuration,
        point_to_point_weight_evaluator=point_to_point_weight_evaluator or UnityWeightEvaluator(),
        point_to_plane_weight_evaluator=point_to_plane_weight_evaluator or UnityWeightEvaluator())
    solution, full_rank = system.solve(singular_value_threshold=configuration.singular_value_threshold)
    transform: Transform = affine_transform_from_solution(
        solution=solution,
        dimension=dimension)

    active_count: int = combined_input.get_active_correspondence_count()
    if active_count < dimension + 1:
        logger.warning(
            f"Only {active_count} active correspondences for a {dimension}D affine fit; "
            f"the result is not fully constrained.")
        return TransformEstimationResult(
            transform=transform,
            success=False,
            error_reason=TransformEstimationErrorReason.EMPTY_OR_UNDERDETERMINED,
            iteration_count=1)
    if not full_rank:
        logger.warning("Affine combined metric system is singular; the result is not unique.")
        return TransformEstimationResult(
            transform=transform,
            success=False,
            error_reason=TransformEstimationErrorReason.ILL_CONDITIONED,
            iteration_count=1)
    return TransformEstimationResult(
        transform=transform,
        success=True,
        iteration_count=1)


def estimate_transform_combined_metric(
    dst_points: numpy.ndarray | list[list[float]],
    dst_normals: numpy.ndarray | list[list[float]] | None,
    src_points: numpy.ndarray | list[list[float]],
    point_to_point_correspondences: CorrespondenceInput,
    point_to_plane_correspondences: CorrespondenceInput,
    mode: TransformMode,
    configuration: TransformEstimationConfiguration | None = None,
    point_to_point_weight_evaluator: WeightEvaluator | None = None,
    point_to_plane_weight_evaluator: WeightEvaluator | None = None
) -> TransformEstimationResult:
    if mode == TransformMode.RIGID:
        return estimate_rigid_transform_combined_metric(
            dst_points=dst_points,
            dst_normals=dst_normals,
            src_points=src_points,
            point_to_point_correspondences=point_to_point_correspondences,
            point_to_plane_correspondences=point_to_plane_correspondences,
            configuration=configuration,
            point_to_point_weight_evaluator=point_to_point_weight_evaluator,
            point_to_plane_weight_evaluator=point_to_plane_weight_evaluator)
    if mode == TransformMode.AFFINE:
        return estimate_affine_transform_combined_metric(
            dst_points=dst_points,
            dst_normals=dst_normals,
            src_points=src_points,
            point_to_point_correspondences=point_to_point_correspondences,
            point_to_plane_correspondences=point_to_plane_correspondences,
            configuration=configuration,
            point_to_point_weight_evaluator=point_to_point_weight_evaluator,
            point_to_plane_weight_evaluator=point_to_plane_weight_evaluator)
    raise ValueError(f"Unsupported transform mode {mode}.")
