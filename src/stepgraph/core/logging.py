"""Logging Configuration with pretty formatting for Stepgraph."""

import logging
from typing import Optional, Dict, Any, Mapping
from enum import Enum, IntEnum
from datetime import datetime
from pydantic import BaseModel, Field

# ANSI Color Codes
class Colors:
    """ANSI color codes for pretty terminal output."""
    HEADER = '\033[95m'      # Pink
    INFO = '\033[94m'        # Blue
    SUCCESS = '\033[92m'     # Green
    WARNING = '\033[93m'     # Yellow
    ERROR = '\033[91m'       # Red
    RESET = '\033[0m'        # Reset
    BOLD = '\033[1m'         # Bold
    DIM = '\033[2m'          # Dim

# Pretty format strings
PRETTY_FORMAT = (
    "%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s"
)

DETAILED_FORMAT = (
    f"{Colors.DIM}%(asctime)s{Colors.RESET} │ "
    f"%(colored_level)-40s │ "
    f"%(message)s"
)

class PrettyFormatter(logging.Formatter):
    """Custom formatter with colors and symbols."""

    level_colors = {
        'DEBUG': (Colors.DIM, '🔍'),
        'VERBOSE': (Colors.DIM, '·'),
        'INFO': (Colors.INFO, 'ℹ️'),
        'STEP': (Colors.SUCCESS, '⏭'),
        'INTERRUPT': (Colors.HEADER, '✋'),
        'WARNING': (Colors.WARNING, '⚠️'),
        'ERROR': (Colors.ERROR, '❌'),
        'CRITICAL': (Colors.ERROR + Colors.BOLD, '🚨'),
    }

    def format(self, record):
        color, symbol = self.level_colors.get(record.levelname, (Colors.RESET, '•'))
        record.colored_level = f"{color}{symbol} {record.levelname}{Colors.RESET}"

        message = super().format(record)

        # Separator line after errors and warnings
        if record.levelno >= logging.WARNING:
            message = f"{message}\n{Colors.DIM}{'─' * 80}{Colors.RESET}"

        return message

class PrettyLogHandler(logging.StreamHandler):
    """Handler that stamps records with a short wall-clock time before formatting."""

    def emit(self, record):
        record.asctime = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        super().emit(record)

class LogComponent(str, Enum):
    """Components that can be logged."""
    GRAPH = "stepgraph.core.graph"
    NODES = "stepgraph.core.graph.nodes"
    SCHEDULER = "stepgraph.core.graph.engine"
    CHECKPOINT = "stepgraph.core.graph.checkpoint"
    INTERRUPT = "stepgraph.core.graph.interrupt"
    COLLABORATORS = "stepgraph.core.collaborators"
    WORKFLOW = "stepgraph.workflow"

class LogLevel(IntEnum):
    """Log levels mapped to logging module levels."""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL
    STEP = 22       # Super-step transitions
    INTERRUPT = 23  # Paused runs awaiting input

class VerbosityLevel(IntEnum):
    """Custom verbosity levels for more granular control."""
    DEBUG = logging.DEBUG
    VERBOSE = 15  # Custom lower-than-INFO level
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

# Register custom log levels
logging.addLevelName(LogLevel.STEP, "STEP")
logging.addLevelName(LogLevel.INTERRUPT, "INTERRUPT")
logging.addLevelName(VerbosityLevel.VERBOSE, "VERBOSE")

class StepLoggingConfig(BaseModel):
    """Per-graph switches for what the scheduler reports."""
    show_step_transitions: bool = Field(default=True)
    show_state: bool = Field(default=False)

def configure_logging(
    default_level: LogLevel = LogLevel.INFO,
    component_levels: Optional[Dict[LogComponent, LogLevel]] = None,
    pretty: bool = True,
    log_file: Optional[str] = None
) -> None:
    """Configure logging with pretty formatting."""
    handlers = []

    console_handler = PrettyLogHandler() if pretty else logging.StreamHandler()
    console_handler.setFormatter(
        PrettyFormatter(DETAILED_FORMAT) if pretty else logging.Formatter(PRETTY_FORMAT)
    )
    handlers.append(console_handler)

    # File handler if specified (without colors)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(PRETTY_FORMAT))
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(default_level.value)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    for handler in handlers:
        root_logger.addHandler(handler)

    if not component_levels:
        component_levels = {
            LogComponent.SCHEDULER: LogLevel.STEP,
            LogComponent.INTERRUPT: LogLevel.INTERRUPT,
            LogComponent.GRAPH: LogLevel.INFO,
            LogComponent.NODES: LogLevel.INFO,
            LogComponent.CHECKPOINT: LogLevel.WARNING,
        }

    for component, level in component_levels.items():
        logging.getLogger(component.value).setLevel(level.value)

def get_logger(component: LogComponent) -> logging.Logger:
    """Get a logger for a specific component."""
    return logging.getLogger(component.value)

def log_step(logger: logging.Logger, message: str) -> None:
    """Log a super-step transition."""
    logger.log(LogLevel.STEP, f"{Colors.SUCCESS}{message}{Colors.RESET}")

def log_verbose(logger: logging.Logger, message: str) -> None:
    """Log a message at VERBOSE level."""
    if logger.isEnabledFor(VerbosityLevel.VERBOSE):
        logger.log(VerbosityLevel.VERBOSE, message)

def log_state(logger: logging.Logger, state: Mapping[str, Any], prefix: str = "") -> None:
    """Log a state mapping in a readable format."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    for key, value in state.items():
        if isinstance(value, Mapping):
            logger.debug(f"{prefix}{key}:")
            log_state(logger, value, prefix + "  ")
        else:
            logger.debug(f"{prefix}{key}: {value!r}")
