from .schemas import CODE_ARGUMENT, build_eval_tool_schema
from .eval_tool import EvalToolExecutor, tool_status
from .validator import CljKondoValidator, ValidationReport
from .executor import BabashkaExecutor, ReplEvaluator
__all__ = ["CODE_ARGUMENT", "build_eval_tool_schema", "EvalToolExecutor", "tool_status",
           "CljKondoValidator", "ValidationReport", "BabashkaExecutor", "ReplEvaluator"]
