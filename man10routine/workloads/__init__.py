from .controller import WorkloadController
from .polling import poll_until
