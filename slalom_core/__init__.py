from .api import C123ServerApi
from .best_run import BestRunResolver, BR2MergeRecord, ResultsLookup, merge_best_run
from .callbacks import CallbackRegistry, Subscription
from .competitors import (
    detect_finish,
    get_class_id,
    get_other_run_race_id,
    get_run_number,
    is_br1_race,
    is_br2_race,
    parse_gates,
    select_current,
    total_penalty,
)
from .config import (
    ApiConfig,
    EngineConfig,
    ReconnectConfig,
    ReplayConfig,
    SlalomConfig,
    load_config,
)
from .engine import ScoreboardEngine
from .errors import (
    ParseError,
    ResultsLookupError,
    ScoreboardError,
    TransportError,
    ValidationError,
)
from .events import (
    ConfigEvent,
    ConnectionStatusEvent,
    ErrorEvent,
    Event,
    EventInfoEvent,
    OnCourseEvent,
    ResultsEvent,
    VisibilityEvent,
)
from .json_decoder import decode_cli_message, decode_server_message
from .providers import (
    C123Provider,
    C123ServerProvider,
    CLIProvider,
    DataProvider,
    websocket_url,
)
from .recording import Recording, load_recording
from .replay import ReplayProvider
from .scoreboard import ReconcileOutcome, apply_event, build_snapshot, default_state
from .transport import DelimitedFramer, ReconnectingTransport, TcpTransport, WebSocketTransport
from .types import (
    ConnectionState,
    OnCourseCompetitor,
    RaceConfig,
    ResultRow,
    RunResult,
    ScoreboardSnapshot,
    ScoreboardState,
    VisibilityState,
)
from .xml_decoder import decode_xml

__all__ = [
    "C123ServerApi",
    "BestRunResolver",
    "BR2MergeRecord",
    "ResultsLookup",
    "merge_best_run",
    "CallbackRegistry",
    "Subscription",
    "detect_finish",
    "get_class_id",
    "get_other_run_race_id",
    "get_run_number",
    "is_br1_race",
    "is_br2_race",
    "parse_gates",
    "select_current",
    "total_penalty",
    "ApiConfig",
    "EngineConfig",
    "ReconnectConfig",
    "ReplayConfig",
    "SlalomConfig",
    "load_config",
    "ScoreboardEngine",
    "ParseError",
    "ResultsLookupError",
    "ScoreboardError",
    "TransportError",
    "ValidationError",
    "ConfigEvent",
    "ConnectionStatusEvent",
    "ErrorEvent",
    "Event",
    "EventInfoEvent",
    "OnCourseEvent",
    "ResultsEvent",
    "VisibilityEvent",
    "decode_cli_message",
    "decode_server_message",
    "C123Provider",
    "C123ServerProvider",
    "CLIProvider",
    "DataProvider",
    "websocket_url",
    "Recording",
    "load_recording",
    "ReplayProvider",
    "ReconcileOutcome",
    "apply_event",
    "build_snapshot",
    "default_state",
    "DelimitedFramer",
    "ReconnectingTransport",
    "TcpTransport",
    "WebSocketTransport",
    "ConnectionState",
    "OnCourseCompetitor",
    "RaceConfig",
    "ResultRow",
    "RunResult",
    "ScoreboardSnapshot",
    "ScoreboardState",
    "VisibilityState",
    "decode_xml",
]
