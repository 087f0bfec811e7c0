from src.transform_estimation import \
    accumulate_normal_equations, \
    NormalEquations, \
    parallel_reduce, \
    partition_range
import numpy
import threading
import unittest


class TestParallelReduction(unittest.TestCase):

    def test_partition_covers_range_disjointly(self):
        for item_count in (0, 1, 5, 100, 1001):
            for worker_count in (1, 2, 3, 8):
                for minimum_chunk_size in (1, 10, 2000):
                    ranges = partition_range(item_count, worker_count, minimum_chunk_size)
                    self.assertLessEqual(len(ranges), worker_count)
                    covered: list[int] = list()
                    for begin, end in ranges:
                        self.assertLess(begin, end)
                        covered += list(range(begin, end))
                    self.assertEqual(covered, list(range(0, item_count)))
                    if len(ranges) > 1:
                        for begin, end in ranges:
                            self.assertGreaterEqual(end - begin, minimum_chunk_size)

    def test_partition_respects_minimum_chunk_size(self):
        self.assertEqual(partition_range(100, 8, 60), [(0, 100)])
        self.assertEqual(partition_range(100, 8, 50), [(0, 50), (50, 100)])
        self.assertEqual(partition_range(10, 3, 1), [(0, 4), (4, 7), (7, 10)])

    def test_each_item_visited_once(self):
        visited: list[int] = list()
        lock = threading.Lock()

        def map_range(begin: int, end: int) -> list[int]:
            with lock:
                visited.extend(range(begin, end))
            return list(range(begin, end))

        result = parallel_reduce(
            item_count=257,
            map_range=map_range,
            combine=lambda a, b: a + b,
            initial=list(),
            worker_count=4,
            minimum_chunk_size=10)
        self.assertEqual(result, list(range(0, 257)))
        self.assertEqual(sorted(visited), list(range(0, 257)))

    def test_maximum_block_size(self):
        block_sizes: list[int] = list()
        lock = threading.Lock()

        def map_range(begin: int, end: int) -> list[int]:
            with lock:
                block_sizes.append(end - begin)
            return list(range(begin, end))

        for worker_count in (1, 3):
            block_sizes.clear()
            result = parallel_reduce(
                item_count=1000,
                map_range=map_range,
                combine=lambda a, b: a + b,
                initial=list(),
                worker_count=worker_count,
                minimum_chunk_size=100,
                maximum_block_size=64)
            self.assertEqual(result, list(range(0, 1000)))
            self.assertLessEqual(max(block_sizes), 64)
            self.assertEqual(sum(block_sizes), 1000)

    def test_empty_returns_initial(self):
        result = parallel_reduce(
            item_count=0,
            map_range=lambda begin, end: 1,
            combine=lambda a, b: a + b,
            initial=0,
            worker_count=4)
        self.assertEqual(result, 0)

    def test_normal_equations_independent_of_partition(self):
        random_generator = numpy.random.default_rng(seed=21)
        rows = random_generator.normal(size=(300, 4))
        targets = random_generator.normal(size=300)

        def map_range(begin: int, end: int) -> NormalEquations:
            return NormalEquations.from_design(
                design=rows[begin:end, :, numpy.newaxis],
                residuals=targets[begin:end, numpy.newaxis],
                weights=numpy.ones(end - begin))

        expected_ata = numpy.matmul(rows.T, rows)
        expected_atb = numpy.matmul(rows.T, targets)
        for worker_count, maximum_block_size in ((1, None), (2, None), (5, None), (1, 16), (3, 5)):
            system = accumulate_normal_equations(
                item_count=300,
                unknown_count=4,
                map_range=map_range,
                worker_count=worker_count,
                minimum_chunk_size=7,
                maximum_block_size=maximum_block_size)
            self.assertEqual(system.get_unknown_count(), 4)
            self.assertTrue(numpy.allclose(system.ata, expected_ata, rtol=0.0, atol=1e-10))
            self.assertTrue(numpy.allclose(system.atb, expected_atb, rtol=0.0, atol=1e-10))
            self.assertTrue(numpy.array_equal(system.ata, system.ata.T))

    def test_normal_equations_empty(self):
        system = accumulate_normal_equations(
            item_count=0,
            unknown_count=3,
            map_range=lambda begin, end: NormalEquations.zeros(3),
            worker_count=2)
        self.assertTrue(numpy.array_equal(system.ata, numpy.zeros((3, 3))))
        self.assertTrue(numpy.array_equal(system.atb, numpy.zeros(3)))
