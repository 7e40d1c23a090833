"""
End-to-end rolling update: one anchor and two joining agents run their real
loops in threads against a shared in-memory store.

Tests cover:
- All three agents bootstrap to Ready without coordination from the test
- An update event moves every node to the new version
- Node k starts updating only while every lower ordinal is Ready at the new version
"""

import threading
import time
from pathlib import Path

import pytest

from fleet.controller import FleetController
from fleet.provisioning import LocalProvisioner
from fleet.types import Phase

from test_agent import make_agent


pytestmark = [pytest.mark.slow, pytest.mark.integration]


def wait_for(condition, timeout_s=20.0, description="condition"):
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if condition():
            return
        time.sleep(0.02)
    raise AssertionError(f"timed out waiting for {description}")


@pytest.fixture
def fleet(temp_dir, registry, spec):
    """
    Three running agents; stopped and joined at teardown.

    Each time an agent enters Updating, the published records of its
    predecessors are captured as (ordinal, phase, version) tuples.
    """
    entered_updating = []
    agents = []

    def on_transition(ordinal, dst):
        if dst != Phase.UPDATING:
            return
        predecessors = [
            (r.ordinal, r.phase, r.binary_version)
            for r in registry.list_statuses() if r.ordinal < ordinal
        ]
        entered_updating.append((ordinal, predecessors))

    for ordinal in range(3):
        agent = make_agent(temp_dir, registry, spec, ordinal=ordinal)
        agent.state.add_listener(lambda src, dst, reason, ordinal=ordinal: on_transition(ordinal, dst))
        agents.append(agent)

    threads = [threading.Thread(target=a.run, name=f"agent-{i}", daemon=True) for i, a in enumerate(agents)]
    for thread in threads:
        thread.start()

    yield agents, entered_updating

    for agent in agents:
        agent.stop()
    for thread in threads:
        thread.join(timeout=10)
    assert not any(t.is_alive() for t in threads)


def all_ready_at(registry, version):
    records = registry.list_statuses()
    return len(records) == 3 and all(
        r.phase == Phase.READY and r.binary_version == version for r in records
    )


def test_rolling_update_is_strictly_ordered(fleet, registry, temp_dir):
    agents, entered_updating = fleet
    wait_for(lambda: all_ready_at(registry, "v1.0.0"), description="fleet Ready at v1.0.0")

    binary = Path(temp_dir) / "node-v1.1.0"
    binary.write_bytes(b"node v1.1.0")
    controller = FleetController(registry, LocalProvisioner(Path(temp_dir) / "instances"))
    event = controller.emit_update_event("v1.1.0", binary_path=binary)

    wait_for(lambda: all_ready_at(registry, "v1.1.0"), description="fleet Ready at v1.1.0")

    assert [ordinal for ordinal, _ in entered_updating] == [0, 1, 2]
    for ordinal, predecessors in entered_updating:
        assert len(predecessors) == ordinal
        assert all(phase == Phase.READY and version == "v1.1.0" for _, phase, version in predecessors)

    for agent in agents:
        assert agent.version == "v1.1.0"
        assert agent.node.started_with[-1].read_bytes() == b"node v1.1.0"
    records = registry.list_statuses()
    assert all(r.last_event_seq == event.sequence for r in records)
    assert not any(r.updates_halted for r in records)
