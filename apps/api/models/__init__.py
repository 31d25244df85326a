"""Models package."""

from .user import User
from .script_workflow import ScriptWorkflow
from .research_job import ResearchJob
from .research_source import ResearchSource
from .credit_ledger import CreditLedger
