"""terrik - A declarative resource provisioning engine with dependency-graph planning."""

__version__ = "0.1.0"

from . import aws as aws
from .config import Configuration as Configuration
from .context import Context as Context
from .context import Settings as Settings
from .engine import ApplyReport as ApplyReport
from .engine import Engine as Engine
from .executor import ActionStatus as ActionStatus
from .executor import ApplyResult as ApplyResult
from .executor import Executor as Executor
from .graph import Graph as Graph
from .graph import build_graph as build_graph
from .model import Declaration as Declaration
from .model import Model as Model
from .model import Output as Output
from .model import Resource as Resource
from .model import build_resources as build_resources
from .outputs import UNAVAILABLE as UNAVAILABLE
from .outputs import extract_outputs as extract_outputs
from .plan import Action as Action
from .plan import ActionKind as ActionKind
from .plan import Plan as Plan
from .plan import Planner as Planner
from .provider import MemoryProvider as MemoryProvider
from .provider import Provider as Provider
from .refs import UNKNOWN as UNKNOWN
from .refs import Reference as Reference
from .schema import ResourceSchema as ResourceSchema
from .schema import resource_type as resource_type
from .state import StateEntry as StateEntry
from .state import StateStore as StateStore
from .variables import Variable as Variable
