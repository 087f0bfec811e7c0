from .structures import NormalEquations
import functools
import logging
import multiprocessing.pool
from typing import Callable, TypeVar


logger = logging.getLogger(__name__)


PartialType = TypeVar("PartialType")


def partition_range(
    item_count: int,
    worker_count: int,
    minimum_chunk_size: int = 1
) -> list[tuple[int, int]]:
    """
    Split [0, item_count) into contiguous, disjoint [begin, end) ranges that together cover it.
    At most worker_count ranges are produced, and none is shorter than minimum_chunk_size
    unless item_count itself is.
    """
    if item_count <= 0:
        return list()
    worker_count = max(1, worker_count)
    minimum_chunk_size = max(1, minimum_chunk_size)
    chunk_count: int = max(1, min(worker_count, item_count // minimum_chunk_size))
    base_size, remainder = divmod(item_count, chunk_count)
    ranges: list[tuple[int, int]] = list()
    begin: int = 0
    for chunk_index in range(0, chunk_count):
        end: int = begin + base_size + (1 if chunk_index < remainder else 0)
        ranges.append((begin, end))
        begin = end
    return ranges


def parallel_reduce(
    item_count: int,
    map_range: Callable[[int, int], PartialType],
    combine: Callable[[PartialType, PartialType], PartialType],
    initial: PartialType,
    worker_count: int = 1,
    minimum_chunk_size: int = 1,
    maximum_block_size: int | None = None
) -> PartialType:
    """
    Fork-join reduction over the items [0, item_count).
    :param map_range: Computes the partial result of the items in [begin, end). Called concurrently
                      when more than one range exists, so it must not mutate shared state.
    :param combine: Associative operator used to fold the partial results.
    :param initial: Identity element of combine, also returned when there are no items.
    :param maximum_block_size: If set, map_range never sees more than this many items at once;
                               each worker folds its chunk block by block.
    """
    ranges: list[tuple[int, int]] = partition_range(
        item_count=item_count,
        worker_count=worker_count,
        minimum_chunk_size=minimum_chunk_size)

    def map_chunk(begin: int, end: int) -> PartialType:
        if maximum_block_size is None or end - begin <= maximum_block_size:
            return map_range(begin, end)
        partial: PartialType = initial
        for block_begin in range(begin, end, maximum_block_size):
            partial = combine(partial, map_range(block_begin, min(block_begin + maximum_block_size, end)))
        return partial

    partials: list[PartialType]
    if len(ranges) <= 1:
        partials = [map_chunk(begin, end) for begin, end in ranges]
    else:
        logger.debug(f"Reducing {item_count} items in {len(ranges)} chunks.")
        with multiprocessing.pool.ThreadPool(processes=len(ranges)) as pool:
            partials = pool.starmap(map_chunk, ranges)
    return functools.reduce(combine, partials, initial)


def accumulate_normal_equations(
    item_count: int,
    unknown_count: int,
    map_range: Callable[[int, int], NormalEquations],
    worker_count: int = 1,
    minimum_chunk_size: int = 1,
    maximum_block_size: int | None = None
) -> NormalEquations:
    """
    Sum of the partial systems produced by map_range over disjoint slices of [0, item_count).
    """
    return parallel_reduce(
        item_count=item_count,
        map_range=map_range,
        combine=lambda a, b: a + b,
        initial=NormalEquations.zeros(unknown_count),
        worker_count=worker_count,
        minimum_chunk_size=minimum_chunk_size,
        maximum_block_size=maximum_block_size)
