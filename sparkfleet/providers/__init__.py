from sparkfleet.providers.provider import (
    TERMINAL_STATES,
    CloudProvider,
    InstanceRecord,
    LaunchSpec,
)

__all__ = [
    "TERMINAL_STATES",
    "CloudProvider",
    "InstanceRecord",
    "LaunchSpec",
]
