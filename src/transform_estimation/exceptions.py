from src.common import MCTError


class MCTTransformEstimationError(MCTError):
    """
    Raised for problems with configuration files. Problems with the point data itself
    are reported through TransformEstimationResult instead.
    """
    pass
