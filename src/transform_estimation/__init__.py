from .combined_metric import \
    build_affine_combined_metric_system, \
    build_rigid_combined_metric_system, \
    estimate_affine_transform_combined_metric, \
    estimate_rigid_transform_combined_metric, \
    estimate_transform_combined_metric
from .exceptions import \
    MCTTransformEstimationError
from .parallel_reduction import \
    accumulate_normal_equations, \
    parallel_reduce, \
    partition_range
from .point_to_point import \
    affine_point_to_point_normal_equations, \
    estimate_affine_transform_point_to_point, \
    estimate_rigid_transform_point_to_point, \
    estimate_transform_point_to_point
from .structures import \
    as_point_set, \
    Correspondence, \
    CorrespondenceSet, \
    NormalEquations, \
    RBFKernelWeightEvaluator, \
    TransformEstimationConfiguration, \
    TransformEstimationErrorReason, \
    TransformEstimationResult, \
    UnityWeightEvaluator, \
    WeightEvaluator
