from uapoller._UAConfig_ import (
    NodeGroupSettings,
    NodeSetting,
    ReadClientConfig,
    ReadClientWorkarounds,
    Workarounds,
    load_config,
)
from uapoller._UAEmitter_ import Accumulator, LoggingAccumulator, Metric, MetricAccumulator, emit
from uapoller._UAErrors_ import (
    AuthenticationError,
    CommunicationError,
    ConfigurationError,
    PerNodeReadError,
    PollerError,
    SecurityNegotiationError,
    SessionTimeoutError,
    TotalReadFailure,
)
from uapoller._UAMapping_ import NodeMetricMapping, build_mappings, merge_tags
from uapoller._UAPoller_ import _OPCUAPoller_
from uapoller._UAReader_ import NodeValue, decode_value, is_valid_status, read_all
from uapoller._UASession_ import _OPCUASession_, connect

__version__ = "1.0.0"
