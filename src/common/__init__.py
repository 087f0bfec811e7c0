from .exceptions import \
    MCTError
from .math import \
    MathUtils, \
    Transform, \
    TransformMode
from .serialization import \
    IOUtils
