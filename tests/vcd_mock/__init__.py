"""Cloud Director API mock for integration testing.

Provides an in-memory implementation of the Platform protocol so the
adapter, the reconcilers and the scheduler can be tested end to end without
a Cloud Director site.

Key Features:
- Asynchronous tasks that finish immediately, after N polls, or on demand
- BUSY resources carrying their running task (crash recovery)
- Error injection per operation and failing tasks per resource kind
- Call counters for asserting how many mutating calls were made

Usage:
    from vcd_mock import MockPlatform

    platform = MockPlatform(hold_tasks=True)
    vdc = platform.add_vdc("ovdc1")
    platform.add_gateway("edge1", vdc_id=vdc.id)
    adapter = TaskPollingAdapter(platform, config)
"""

from .platform import MockPlatform, MockResource, MockTask

__all__ = [
    "MockPlatform",
    "MockResource",
    "MockTask",
]
