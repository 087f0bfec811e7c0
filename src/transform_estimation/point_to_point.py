# Rigid solution based on: Arun et al. Least square fitting of two 3D point sets (1987)
# with the reflection correction of Umeyama, Least-squares estimation of transformation
# parameters between two point patterns (1991).
# Affine solution is an ordinary linear least-squares fit of all Dim*(Dim+1) parameters.
from .parallel_reduction import accumulate_normal_equations
from .structures import \
    as_point_set, \
    Correspondence, \
    CorrespondenceSet, \
    NormalEquations, \
    TransformEstimationConfiguration, \
    TransformEstimationErrorReason, \
    TransformEstimationResult
from src.common import \
    Transform, \
    TransformMode
import logging
import numpy
from typing import Iterable


logger = logging.getLogger(__name__)


def affine_point_to_point_normal_equations(
    dst_points: numpy.ndarray,  # [point_index][dimension], row i corresponds to src_points row i
    src_points: numpy.ndarray,
    weights: numpy.ndarray | None = None
) -> NormalEquations:
    """
    Unknowns are the row-major linear part followed by the translation.
    Each point pair contributes one design block J (unknowns x dimension) whose column j
    holds the source point in rows [j*dim, (j+1)*dim) and a one in translation row j,
    such that J^T * theta = linear * src + translation.
    """
    point_count, dimension = src_points.shape
    unknown_count: int = dimension * (dimension + 1)
    if weights is None:
        weights = numpy.ones(point_count, dtype="float64")
    design: numpy.ndarray = numpy.zeros((point_count, unknown_count, dimension), dtype="float64")
    for j in range(0, dimension):
        design[:, j * dimension:(j + 1) * dimension, j] = src_points
        design[:, dimension * dimension + j, j] = 1.0
    return NormalEquations.from_design(
        design=design,
        residuals=dst_points,
        weights=weights)


def affine_transform_from_solution(
    solution: numpy.ndarray,
    dimension: int
) -> Transform:
    return Transform.from_numpy_arrays(
        linear=solution[0:dimension * dimension].reshape(dimension, dimension),
        translation=solution[dimension * dimension:],
        mode=TransformMode.AFFINE)


def _prepare_point_sets(
    dst_points: numpy.ndarray | list[list[float]],
    src_points: numpy.ndarray | list[list[float]],
    correspondences: CorrespondenceSet | Iterable[Correspondence] | None
) -> tuple[numpy.ndarray, numpy.ndarray]:
    dst: numpy.ndarray = as_point_set(dst_points, label="destination points")
    src: numpy.ndarray = as_point_set(src_points, label="source points")
    if dst.shape[1] != src.shape[1]:
        raise ValueError(
            f"Destination and source points must be of identical dimension. Got {dst.shape[1]} and {src.shape[1]}.")
    if correspondences is not None:
        dst, src = CorrespondenceSet.coerce(correspondences).select_corresponding_points(
            points_first=dst,
            points_second=src)
    return dst, src


def estimate_rigid_transform_point_to_point(
    dst_points: numpy.ndarray | list[list[float]],  # [point_index][dimension]
    src_points: numpy.ndarray | list[list[float]],  # [point_index][dimension]
    correspondences: CorrespondenceSet | Iterable[Correspondence] | None = None
) -> TransformEstimationResult:
    """
    Closed-form rigid fit minimizing the sum of squared distances between dst and the transformed src.
    :param dst_points: destination points
    :param src_points: source points
    :param correspondences: If None, row i of dst corresponds to row i of src.
    :return: success is False when fewer than dimension points are available
    """
    dst, src = _prepare_point_sets(dst_points, src_points, correspondences)
    dimension: int = dst.shape[1]
    if len(dst) != len(src):
        logger.warning(f"Point set sizes differ ({len(dst)} and {len(src)}); returning identity.")
        return TransformEstimationResult.identity_failure(
            dimension=dimension,
            mode=TransformMode.RIGID,
            error_reason=TransformEstimationErrorReason.INPUT_MISMATCH)
    if len(src) == 0:
        logger.warning("No points were provided; returning identity.")
        return TransformEstimationResult.identity_failure(
            dimension=dimension,
            mode=TransformMode.RIGID,
            error_reason=TransformEstimationErrorReason.EMPTY_OR_UNDERDETERMINED)

    centroid_dst: numpy.ndarray = numpy.mean(dst, axis=0)
    centroid_src: numpy.ndarray = numpy.mean(src, axis=0)
    centered_dst: numpy.ndarray = dst - centroid_dst
    centered_src: numpy.ndarray = src - centroid_src
    covariance: numpy.ndarray = numpy.matmul(centered_dst.T, centered_src) / len(src)
    u, _, vh = numpy.linalg.svd(covariance)
    if numpy.linalg.det(numpy.matmul(u, vh)) < 0.0:
        # reflection; the proper rotation flips the axis of least variance
        u[:, dimension - 1] = -u[:, dimension - 1]
    rotation: numpy.ndarray = numpy.matmul(u, vh)
    translation: numpy.ndarray = centroid_dst - numpy.matmul(rotation, centroid_src)
    transform: Transform = Transform.from_numpy_arrays(
        linear=rotation,
        translation=translation,
        mode=TransformMode.RIGID)

    if len(src) < dimension:
        logger.warning(
            f"Only {len(src)} point pairs for a {dimension}D rigid fit; the result is not fully constrained.")
        return TransformEstimationResult(
            transform=transform,
            success=False,
            error_reason=TransformEstimationErrorReason.EMPTY_OR_UNDERDETERMINED)
    return TransformEstimationResult(
        transform=transform,
        success=True)


def estimate_affine_transform_point_to_point(
    dst_points: numpy.ndarray | list[list[float]],  # [point_index][dimension]
    src_points: numpy.ndarray | list[list[float]],  # [point_index][dimension]
    correspondences: CorrespondenceSet | Iterable[Correspondence] | None = None,
    configuration: TransformEstimationConfiguration | None = None
) -> TransformEstimationResult:
    """
    Closed-form affine fit minimizing the sum of squared distances between dst and the transformed src.
    :param dst_points: destination points
    :param src_points: source points
    :param correspondences: If None, row i of dst corresponds to row i of src.
    :param configuration: Only the parallelism and singular value settings are used.
    :return: success is False when fewer than dimension+1 points are available or the system is singular
    """
    if configuration is None:
        configuration = TransformEstimationConfiguration()
    dst, src = _prepare_point_sets(dst_points, src_points, correspondences)
    dimension: int = dst.shape[1]
    if len(dst) != len(src):
        logger.warning(f"Point set sizes differ ({len(dst)} and {len(src)}); returning identity.")
        return TransformEstimationResult.identity_failure(
            dimension=dimension,
            mode=TransformMode.AFFINE,
            error_reason=TransformEstimationErrorReason.INPUT_MISMATCH)
    if len(src) == 0:
        logger.warning("No points were provided; returning identity.")
        return TransformEstimationResult.identity_failure(
            dimension=dimension,
            mode=TransformMode.AFFINE,
            error_reason=TransformEstimationErrorReason.EMPTY_OR_UNDERDETERMINED)

    normal_equations: NormalEquations = accumulate_normal_equations(
        item_count=len(src),
        unknown_count=dimension * (dimension + 1),
        map_range=lambda begin, end: affine_point_to_point_normal_equations(
            dst_points=dst[begin:end],
            src_points=src[begin:end]),
        worker_count=configuration.worker_count,
        minimum_chunk_size=configuration.minimum_chunk_size,
        maximum_block_size=configuration.maximum_block_size)
    solution, full_rank = normal_equations.solve(
        singular_value_threshold=configuration.singular_value_threshold)
    transform: Transform = affine_transform_from_solution(
        solution=solution,
        dimension=dimension)

    if len(src) < dimension + 1:
        logger.warning(
            f"Only {len(src)} point pairs for a {dimension}D affine fit; the result is not fully constrained.")
        return TransformEstimationResult(
            transform=transform,
            success=False,
            error_reason=TransformEstimationErrorReason.EMPTY_OR_UNDERDETERMINED)
    if not full_rank:
        logger.warning("Affine point-to-point system is singular; the result is not unique.")
        return TransformEstimationResult(
            transform=transform,
            success=False,
            error_reason=TransformEstimationErrorReason.ILL_CONDITIONED)
    return TransformEstimationResult(
        transform=transform,
        success=True)


def estimate_transform_point_to_point(
    dst_points: numpy.ndarray | list[list[float]],
    src_points: numpy.ndarray | list[list[float]],
    mode: TransformMode,
    correspondences: CorrespondenceSet | Iterable[Correspondence] | None = None,
    configuration: TransformEstimationConfiguration | None = None
) -> TransformEstimationResult:
    if mode == TransformMode.RIGID:
        return estimate_rigid_transform_point_to_point(
            dst_points=dst_points,
            src_points=src_points,
            correspondences=correspondences)
    if mode == TransformMode.AFFINE:
        return estimate_affine_transform_point_to_point(
            dst_points=dst_points,
            src_points=src_points,
            correspondences=correspondences,
            configuration=configuration)
    raise ValueError(f"Unsupported transform mode {mode}.")
