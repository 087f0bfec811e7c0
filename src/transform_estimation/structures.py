from .exceptions import MCTTransformEstimationError
from src.common import \
    IOUtils, \
    Transform, \
    TransformMode
from enum import StrEnum
import logging
import numpy
from pydantic import BaseModel, Field
from typing import Callable, Final, Iterable, Iterator


logger = logging.getLogger(__name__)


_PUBLIC_MESSAGE_KEY: Final[str] = "public_message"
_PRIVATE_MESSAGE_KEY: Final[str] = "private_message"


class Correspondence(BaseModel):
    index_in_first: int = Field()  # index into the destination (first) point set
    index_in_second: int = Field()  # index into the source (second) point set
    value: float = Field(default=1.0, description="payload for weight evaluators, e.g. a distance or a score")


class CorrespondenceSet:
    """
    Ordered set of correspondences, stored as three parallel arrays.
    The order has no effect on the estimated transforms.
    """

    _index_in_first: numpy.ndarray
    _index_in_second: numpy.ndarray
    _values: numpy.ndarray

    def __init__(
        self,
        index_in_first: numpy.ndarray | list[int] | None = None,
        index_in_second: numpy.ndarray | list[int] | None = None,
        values: numpy.ndarray | list[float] | None = None
    ):
        if index_in_first is None:
            index_in_first = list()
        if index_in_second is None:
            index_in_second = list()
        self._index_in_first = numpy.asarray(index_in_first, dtype="int64").reshape(-1)
        self._index_in_second = numpy.asarray(index_in_second, dtype="int64").reshape(-1)
        if len(self._index_in_first) != len(self._index_in_second):
            raise ValueError("Correspondence index arrays must be of identical length.")
        if values is None:
            self._values = numpy.ones(len(self._index_in_first), dtype="float64")
        else:
            self._values = numpy.asarray(values, dtype="float64").reshape(-1)
            if len(self._values) != len(self._index_in_first):
                raise ValueError("Correspondence values must be of identical length to the index arrays.")

    def __getitem__(self, index: int) -> Correspondence:
        return Correspondence(
            index_in_first=int(self._index_in_first[index]),
            index_in_second=int(self._index_in_second[index]),
            value=float(self._values[index]))

    def __iter__(self) -> Iterator[Correspondence]:
        for i in range(0, len(self)):
            yield self[i]

    def __len__(self) -> int:
        return len(self._index_in_first)

    def evaluate_weights(
        self,
        weight_evaluator: 'WeightEvaluator'
    ) -> numpy.ndarray:
        """
        One weight per correspondence, in order. Negative weights are clipped to zero.
        """
        if type(weight_evaluator) is UnityWeightEvaluator:
            return numpy.ones(len(self), dtype="float64")
        weights: numpy.ndarray = numpy.fromiter(
            (weight_evaluator(int(first), int(second), float(value))
             for first, second, value in zip(self._index_in_first, self._index_in_second, self._values)),
            dtype="float64",
            count=len(self))
        negative_mask: numpy.ndarray = weights < 0.0
        if numpy.any(negative_mask):
            logger.warning(
                f"Weight evaluator returned {int(numpy.count_nonzero(negative_mask))} negative weight(s); "
                f"they were clipped to zero.")
            weights[negative_mask] = 0.0
        return weights

    def get_index_in_first(self) -> numpy.ndarray:
        return self._index_in_first

    def get_index_in_second(self) -> numpy.ndarray:
        return self._index_in_second

    def get_values(self) -> numpy.ndarray:
        return self._values

    def select_corresponding_points(
        self,
        points_first: numpy.ndarray,
        points_second: numpy.ndarray
    ) -> tuple[numpy.ndarray, numpy.ndarray]:
        """
        :return: (selected first points, selected second points), row i of each belonging to correspondence i
        """
        self.validate_indices(
            first_count=len(points_first),
            second_count=len(points_second))
        return points_first[self._index_in_first], points_second[self._index_in_second]

    def slice(
        self,
        begin: int,
        end: int
    ) -> 'CorrespondenceSet':
        return CorrespondenceSet(
            index_in_first=self._index_in_first[begin:end],
            index_in_second=self._index_in_second[begin:end],
            values=self._values[begin:end])

    def validate_indices(
        self,
        first_count: int,
        second_count: int
    ) -> None:
        if len(self) <= 0:
            return
        if self._index_in_first.min() < 0 or self._index_in_first.max() >= first_count:
            raise ValueError(f"Correspondence indices into the first set must lie in [0, {first_count}).")
        if self._index_in_second.min() < 0 or self._index_in_second.max() >= second_count:
            raise ValueError(f"Correspondence indices into the second set must lie in [0, {second_count}).")

    @staticmethod
    def coerce(
        correspondences: 'CorrespondenceSet | Iterable[Correspondence] | None'
    ) -> 'CorrespondenceSet':
        if correspondences is None:
            return CorrespondenceSet()
        if isinstance(correspondences, CorrespondenceSet):
            return correspondences
        return CorrespondenceSet.from_correspondences(correspondences)

    @staticmethod
    def from_correspondences(
        correspondences: Iterable[Correspondence]
    ) -> 'CorrespondenceSet':
        correspondences = list(correspondences)
        return CorrespondenceSet(
            index_in_first=[correspondence.index_in_first for correspondence in correspondences],
            index_in_second=[correspondence.index_in_second for correspondence in correspondences],
            values=[correspondence.value for correspondence in correspondences])

    @staticmethod
    def identity(
        count: int
    ) -> 'CorrespondenceSet':
        indices: numpy.ndarray = numpy.arange(count, dtype="int64")
        return CorrespondenceSet(
            index_in_first=indices,
            index_in_second=indices)


# (index_in_first, index_in_second, value) -> non-negative weight.
# Evaluators may be called concurrently from several worker threads.
WeightEvaluator = Callable[[int, int, float], float]


class UnityWeightEvaluator:
    def __call__(
        self,
        index_in_first: int,
        index_in_second: int,
        value: float
    ) -> float:
        return 1.0


class RBFKernelWeightEvaluator:
    """
    Gaussian kernel on the correspondence value, interpreted as a distance:
    weight = exp(-value^2 / (2 * sigma^2))
    """

    _sigma: float
    _negative_half_inverse_sigma_squared: float

    def __init__(
        self,
        sigma: float = 1.0
    ):
        if sigma <= 0.0:
            raise ValueError("sigma must be positive.")
        self._sigma = sigma
        self._negative_half_inverse_sigma_squared = -0.5 / (sigma * sigma)

    def __call__(
        self,
        index_in_first: int,
        index_in_second: int,
        value: float
    ) -> float:
        return float(numpy.exp(self._negative_half_inverse_sigma_squared * value * value))

    def get_sigma(self) -> float:
        return self._sigma


class NormalEquations:
    """
    Accumulator for the least-squares system AtA * x = Atb.
    AtA is symmetric positive semi-definite; partial systems combine by addition.
    """

    ata: numpy.ndarray  # [unknown_count][unknown_count]
    atb: numpy.ndarray  # [unknown_count]

    def __init__(
        self,
        ata: numpy.ndarray,
        atb: numpy.ndarray
    ):
        self.ata = numpy.asarray(ata, dtype="float64")
        self.atb = numpy.asarray(atb, dtype="float64").reshape(-1)
        if self.ata.shape != (len(self.atb), len(self.atb)):
            raise ValueError(f"AtA shape {self.ata.shape} does not match Atb length {len(self.atb)}.")

    def __add__(self, other) -> 'NormalEquations':
        if not isinstance(other, NormalEquations):
            raise ValueError
        return NormalEquations(
            ata=self.ata + other.ata,
            atb=self.atb + other.atb)

    def __iadd__(self, other) -> 'NormalEquations':
        if not isinstance(other, NormalEquations):
            raise ValueError
        self.ata += other.ata
        self.atb += other.atb
        return self

    def get_unknown_count(self) -> int:
        return len(self.atb)

    def solve(
        self,
        singular_value_threshold: float
    ) -> tuple[numpy.ndarray, bool]:
        """
        Least-squares, least-norm solution (singular values of AtA below
        singular_value_threshold * largest singular value are treated as zero).
        :return: (solution, True if AtA was of full rank under that threshold)
        """
        solution, _, rank, _ = numpy.linalg.lstsq(self.ata, self.atb, rcond=singular_value_threshold)
        return solution, int(rank) == self.get_unknown_count()

    @staticmethod
    def from_design(
        design: numpy.ndarray,
        residuals: numpy.ndarray,
        weights: numpy.ndarray
    ) -> 'NormalEquations':
        """
        Weighted sum over terms n of J_n * J_n^T (AtA) and J_n * r_n (Atb).
        :param design: [term_index][unknown_index][residual_component]
        :param residuals: [term_index][residual_component]
        :param weights: [term_index]
        """
        ata: numpy.ndarray = numpy.einsum("n,nud,nvd->uv", weights, design, design)
        atb: numpy.ndarray = numpy.einsum("n,nud,nd->u", weights, design, residuals)
        return NormalEquations(
            ata=0.5 * (ata + ata.T),
            atb=atb)

    @staticmethod
    def zeros(
        unknown_count: int
    ) -> 'NormalEquations':
        return NormalEquations(
            ata=numpy.zeros((unknown_count, unknown_count), dtype="float64"),
            atb=numpy.zeros(unknown_count, dtype="float64"))


class TransformEstimationErrorReason(StrEnum):
    INPUT_MISMATCH: Final[str] = "input_mismatch"
    EMPTY_OR_UNDERDETERMINED: Final[str] = "empty_or_underdetermined"
    NON_CONVERGENCE: Final[str] = "non_convergence"
    ILL_CONDITIONED: Final[str] = "ill_conditioned"


class TransformEstimationConfiguration(BaseModel):
    # Iterative (rigid combined metric) solver stops after this many iterations...
    max_iterations: int = Field(default=1, ge=1)
    # ... or, successfully, once the norm of the incremental update drops below this
    convergence_tolerance: float = Field(default=1e-5, gt=0.0)

    # Global weights of the two term types of the combined metric.
    # A term type only takes part if its weight is positive and it has correspondences.
    point_to_point_weight: float = Field(default=1.0, ge=0.0)
    point_to_plane_weight: float = Field(default=0.0, ge=0.0)

    worker_count: int = Field(default=1, ge=1, description="threads used to accumulate the normal equations")
    minimum_chunk_size: int = Field(default=1024, ge=1, description="fewest correspondences handed to one worker")
    # Bounds the temporary per-block design arrays; a worker folds its chunk block by block
    maximum_block_size: int = Field(default=4096, ge=1)

    # Relative to the largest singular value of AtA
    singular_value_threshold: float = Field(default=1e-12, ge=0.0)

    def to_file(
        self,
        filepath: str
    ) -> None:
        errors: dict[str, str] = dict()
        if not IOUtils.model_write(
            filepath=filepath,
            model=self,
            on_error_for_user=lambda msg: errors.__setitem__(_PUBLIC_MESSAGE_KEY, msg),
            on_error_for_dev=lambda msg: errors.__setitem__(_PRIVATE_MESSAGE_KEY, msg)
        ):
            logger.error(errors.get(_PRIVATE_MESSAGE_KEY, f"Failed to write {filepath}."))
            raise MCTTransformEstimationError(
                message=errors.get(_PUBLIC_MESSAGE_KEY, "Error writing the configuration file."))

    @staticmethod
    def from_file(
        filepath: str
    ) -> 'TransformEstimationConfiguration':
        """
        hjson (or plain json) file whose top-level keys are field names. Absent fields keep their defaults.
        """
        errors: dict[str, str] = dict()
        configuration: TransformEstimationConfiguration | None = IOUtils.model_read(
            filepath=filepath,
            model_type=TransformEstimationConfiguration,
            on_error_for_user=lambda msg: errors.__setitem__(_PUBLIC_MESSAGE_KEY, msg),
            on_error_for_dev=lambda msg: errors.__setitem__(_PRIVATE_MESSAGE_KEY, msg))
        if configuration is None:
            logger.error(errors.get(_PRIVATE_MESSAGE_KEY, f"Failed to read {filepath}."))
            raise MCTTransformEstimationError(
                message=errors.get(_PUBLIC_MESSAGE_KEY, "Error reading the configuration file."))
        return configuration


class TransformEstimationResult(BaseModel):
    transform: Transform = Field()
    success: bool = Field()
    error_reason: TransformEstimationErrorReason | None = Field(default=None)
    iteration_count: int = Field(default=0)

    @staticmethod
    def identity_failure(
        dimension: int,
        mode: TransformMode,
        error_reason: TransformEstimationErrorReason
    ) -> 'TransformEstimationResult':
        return TransformEstimationResult(
            transform=Transform.identity(dimension=dimension, mode=mode),
            success=False,
            error_reason=error_reason)


def as_point_set(
    points: numpy.ndarray | list[list[float]],  # [point_index][dimension]
    label: str = "points"
) -> numpy.ndarray:
    """
    Points are in rows. Returns a float64 array of shape (N, dimension).
    """
    point_array: numpy.ndarray = numpy.asarray(points, dtype="float64")
    if point_array.ndim != 2 or point_array.shape[1] < 1:
        raise ValueError(f"Expected {label} to be of shape (N, dimension). Got {point_array.shape}.")
    return point_array
