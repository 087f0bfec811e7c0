from src.transform_estimation import \
    as_point_set, \
    Correspondence, \
    CorrespondenceSet, \
    MCTTransformEstimationError, \
    NormalEquations, \
    RBFKernelWeightEvaluator, \
    TransformEstimationConfiguration, \
    UnityWeightEvaluator
import numpy
import os
from pydantic import ValidationError
import tempfile
import unittest


class TestCorrespondenceSet(unittest.TestCase):

    def test_from_correspondences(self):
        correspondences = [
            Correspondence(index_in_first=3, index_in_second=0, value=0.5),
            Correspondence(index_in_first=1, index_in_second=2)]
        correspondence_set = CorrespondenceSet.coerce(correspondences)
        self.assertEqual(len(correspondence_set), 2)
        self.assertEqual(correspondence_set.get_index_in_first().tolist(), [3, 1])
        self.assertEqual(correspondence_set.get_index_in_second().tolist(), [0, 2])
        self.assertEqual(correspondence_set.get_values().tolist(), [0.5, 1.0])
        self.assertEqual(list(correspondence_set), correspondences)
        self.assertEqual(correspondence_set[1].index_in_first, 1)

    def test_coerce(self):
        self.assertEqual(len(CorrespondenceSet.coerce(None)), 0)
        correspondence_set = CorrespondenceSet.identity(4)
        self.assertIs(CorrespondenceSet.coerce(correspondence_set), correspondence_set)

    def test_mismatched_arrays(self):
        with self.assertRaises(ValueError):
            CorrespondenceSet([0, 1], [0])
        with self.assertRaises(ValueError):
            CorrespondenceSet([0, 1], [0, 1], [1.0])

    def test_slice(self):
        correspondence_set = CorrespondenceSet(
            index_in_first=[0, 1, 2, 3],
            index_in_second=[3, 2, 1, 0],
            values=[0.0, 1.0, 2.0, 3.0])
        sliced = correspondence_set.slice(1, 3)
        self.assertEqual(sliced.get_index_in_first().tolist(), [1, 2])
        self.assertEqual(sliced.get_index_in_second().tolist(), [2, 1])
        self.assertEqual(sliced.get_values().tolist(), [1.0, 2.0])

    def test_select_corresponding_points(self):
        first = numpy.asarray([[0.0, 0.0], [1.0, 1.0], [2.0, 2.0]])
        second = numpy.asarray([[5.0, 5.0], [6.0, 6.0]])
        correspondence_set = CorrespondenceSet([2, 0], [0, 1])
        selected_first, selected_second = correspondence_set.select_corresponding_points(first, second)
        self.assertEqual(selected_first.tolist(), [[2.0, 2.0], [0.0, 0.0]])
        self.assertEqual(selected_second.tolist(), [[5.0, 5.0], [6.0, 6.0]])

    def test_validate_indices(self):
        CorrespondenceSet().validate_indices(first_count=0, second_count=0)
        CorrespondenceSet([0, 2], [1, 0]).validate_indices(first_count=3, second_count=2)
        with self.assertRaises(ValueError):
            CorrespondenceSet([0, 3], [1, 0]).validate_indices(first_count=3, second_count=2)
        with self.assertRaises(ValueError):
            CorrespondenceSet([0, 2], [-1, 0]).validate_indices(first_count=3, second_count=2)


class TestWeightEvaluators(unittest.TestCase):

    def test_unity(self):
        correspondence_set = CorrespondenceSet([0, 1, 2], [0, 1, 2], [4.0, 5.0, 6.0])
        weights = correspondence_set.evaluate_weights(UnityWeightEvaluator())
        self.assertEqual(weights.tolist(), [1.0, 1.0, 1.0])

    def test_rbf_kernel(self):
        evaluator = RBFKernelWeightEvaluator(sigma=2.0)
        self.assertEqual(evaluator.get_sigma(), 2.0)
        self.assertAlmostEqual(evaluator(0, 0, 0.0), 1.0)
        self.assertAlmostEqual(evaluator(0, 0, 2.0), numpy.exp(-0.5))
        self.assertAlmostEqual(evaluator(0, 0, -2.0), numpy.exp(-0.5))
        correspondence_set = CorrespondenceSet([0, 1], [0, 1], [0.0, 4.0])
        weights = correspondence_set.evaluate_weights(evaluator)
        self.assertAlmostEqual(float(weights[0]), 1.0)
        self.assertAlmostEqual(float(weights[1]), numpy.exp(-2.0))

    def test_rbf_kernel_invalid_sigma(self):
        with self.assertRaises(ValueError):
            RBFKernelWeightEvaluator(sigma=0.0)
        with self.assertRaises(ValueError):
            RBFKernelWeightEvaluator(sigma=-1.0)

    def test_unity_subclass_is_called(self):
        class HalfWeightEvaluator(UnityWeightEvaluator):
            def __call__(self, index_in_first: int, index_in_second: int, value: float) -> float:
                return 0.5

        correspondence_set = CorrespondenceSet([0, 1], [0, 1])
        weights = correspondence_set.evaluate_weights(HalfWeightEvaluator())
        self.assertEqual(weights.tolist(), [0.5, 0.5])

    def test_negative_weights_clipped(self):
        correspondence_set = CorrespondenceSet([0, 1, 2], [0, 1, 2], [1.0, -2.0, -3.0])
        with self.assertLogs("src.transform_estimation.structures", level="WARNING"):
            weights = correspondence_set.evaluate_weights(
                lambda index_in_first, index_in_second, value: value)
        self.assertEqual(weights.tolist(), [1.0, 0.0, 0.0])

    def test_custom_evaluator(self):
        correspondence_set = CorrespondenceSet([3, 4], [1, 2], [0.5, 0.25])
        weights = correspondence_set.evaluate_weights(
            lambda index_in_first, index_in_second, value: index_in_first * value)
        self.assertEqual(weights.tolist(), [1.5, 1.0])


class TestNormalEquations(unittest.TestCase):

    def test_add(self):
        a = NormalEquations(ata=numpy.identity(2), atb=[1.0, 2.0])
        b = NormalEquations(ata=2.0 * numpy.identity(2), atb=[3.0, 4.0])
        c = a + b
        self.assertEqual(c.ata.tolist(), [[3.0, 0.0], [0.0, 3.0]])
        self.assertEqual(c.atb.tolist(), [4.0, 6.0])
        self.assertEqual(a.atb.tolist(), [1.0, 2.0])
        a += b
        self.assertEqual(a.atb.tolist(), [4.0, 6.0])

    def test_shape_mismatch(self):
        with self.assertRaises(ValueError):
            NormalEquations(ata=numpy.identity(3), atb=[1.0, 2.0])

    def test_solve_full_rank(self):
        system = NormalEquations(ata=[[2.0, 0.0], [0.0, 4.0]], atb=[2.0, 8.0])
        solution, full_rank = system.solve(singular_value_threshold=1e-12)
        self.assertTrue(full_rank)
        self.assertAlmostEqual(float(solution[0]), 1.0)
        self.assertAlmostEqual(float(solution[1]), 2.0)

    def test_solve_rank_deficient(self):
        system = NormalEquations(ata=[[1.0, 1.0], [1.0, 1.0]], atb=[2.0, 2.0])
        solution, full_rank = system.solve(singular_value_threshold=1e-12)
        self.assertFalse(full_rank)
        # least-norm solution
        self.assertAlmostEqual(float(solution[0]), 1.0)
        self.assertAlmostEqual(float(solution[1]), 1.0)

    def test_from_design(self):
        design = numpy.asarray([
            [[1.0], [0.0]],
            [[1.0], [1.0]],
            [[1.0], [2.0]]])
        residuals = numpy.asarray([[1.0], [3.0], [5.0]])
        weights = numpy.asarray([1.0, 2.0, 1.0])
        system = NormalEquations.from_design(design, residuals, weights)
        self.assertEqual(system.ata.tolist(), [[4.0, 4.0], [4.0, 6.0]])
        self.assertEqual(system.atb.tolist(), [12.0, 16.0])
        solution, full_rank = system.solve(singular_value_threshold=1e-12)
        self.assertTrue(full_rank)
        self.assertAlmostEqual(float(solution[0]), 1.0)
        self.assertAlmostEqual(float(solution[1]), 2.0)


class TestConfiguration(unittest.TestCase):

    def test_defaults(self):
        configuration = TransformEstimationConfiguration()
        self.assertEqual(configuration.max_iterations, 1)
        self.assertEqual(configuration.point_to_point_weight, 1.0)
        self.assertEqual(configuration.point_to_plane_weight, 0.0)
        self.assertEqual(configuration.worker_count, 1)

    def test_bounds(self):
        with self.assertRaises(ValidationError):
            TransformEstimationConfiguration(max_iterations=0)
        with self.assertRaises(ValidationError):
            TransformEstimationConfiguration(convergence_tolerance=0.0)
        with self.assertRaises(ValidationError):
            TransformEstimationConfiguration(point_to_plane_weight=-1.0)
        with self.assertRaises(ValidationError):
            TransformEstimationConfiguration(worker_count=0)

    def test_from_file(self):
        with tempfile.TemporaryDirectory() as temppath:
            filepath: str = os.path.join(temppath, "configuration.json")
            with open(filepath, 'w', encoding='utf-8') as output_file:
                output_file.write(
                    "{\n"
                    "  # hjson permits comments and unquoted keys\n"
                    "  max_iterations: 25\n"
                    "  point_to_plane_weight: 0.5\n"
                    "  worker_count: 4\n"
                    "}\n")
            configuration = TransformEstimationConfiguration.from_file(filepath)
        self.assertEqual(configuration.max_iterations, 25)
        self.assertEqual(configuration.point_to_plane_weight, 0.5)
        self.assertEqual(configuration.worker_count, 4)
        self.assertEqual(configuration.convergence_tolerance, 1e-5)

    def test_to_file_and_back(self):
        configuration = TransformEstimationConfiguration(
            max_iterations=40,
            convergence_tolerance=1e-7,
            point_to_point_weight=0.25,
            point_to_plane_weight=0.75)
        with tempfile.TemporaryDirectory() as temppath:
            filepath: str = os.path.join(temppath, "nested", "configuration.json")
            configuration.to_file(filepath)
            restored = TransformEstimationConfiguration.from_file(filepath)
        self.assertEqual(restored, configuration)

    def test_to_file_blocked_by_file(self):
        with tempfile.TemporaryDirectory() as temppath:
            blocking_filepath: str = os.path.join(temppath, "blocking")
            with open(blocking_filepath, 'w', encoding='utf-8') as output_file:
                output_file.write("not a directory")
            with self.assertRaises(MCTTransformEstimationError):
                TransformEstimationConfiguration().to_file(os.path.join(blocking_filepath, "configuration.json"))

    def test_from_file_not_an_object(self):
        with tempfile.TemporaryDirectory() as temppath:
            filepath: str = os.path.join(temppath, "configuration.json")
            with open(filepath, 'w', encoding='utf-8') as output_file:
                output_file.write("[1, 2, 3]")
            with self.assertRaises(MCTTransformEstimationError) as context:
                TransformEstimationConfiguration.from_file(filepath)
        self.assertEqual(context.exception.message, "The file contents were not in the expected format.")

    def test_from_file_missing(self):
        with tempfile.TemporaryDirectory() as temppath:
            with self.assertRaises(MCTTransformEstimationError) as context:
                TransformEstimationConfiguration.from_file(os.path.join(temppath, "missing.json"))
        self.assertEqual(context.exception.message, "The requested file could not be found.")

    def test_from_file_invalid_value(self):
        with tempfile.TemporaryDirectory() as temppath:
            filepath: str = os.path.join(temppath, "configuration.json")
            with open(filepath, 'w', encoding='utf-8') as output_file:
                output_file.write('{"max_iterations": -3}')
            with self.assertRaises(MCTTransformEstimationError):
                TransformEstimationConfiguration.from_file(filepath)


class TestPointSet(unittest.TestCase):

    def test_as_point_set(self):
        points = as_point_set([[1, 2, 3], [4, 5, 6]])
        self.assertEqual(points.dtype, numpy.float64)
        self.assertEqual(points.shape, (2, 3))
        with self.assertRaises(ValueError):
            as_point_set([1.0, 2.0, 3.0])
