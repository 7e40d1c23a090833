"""
Fleet - Validator fleet bootstrap and rolling updates.

The Fleet system keeps a set of validator machines converged on one
Specification:
- Node Agents run on each machine, bootstrap the local node and react to
  fleet-wide update events
- The Fleet Controller stores specifications, provisions machines, appends
  events and aggregates status records

Components:
    - agent.py: Node agent (runs on each machine)
    - controller.py: Control plane (invoked by the operator)
    - rollout.py: Ordinal / wave gating of rolling updates
    - types.py: Shared record types

Usage:
    # Start the agent on a machine
    fleet-agent run --settings /etc/fleet/agent.yaml

    # Query fleet health from the control plane
    fleetctl health --spec fleet.yaml
"""

from fleet.types import NodeIdentity, NodeStatusRecord, Phase

__all__ = ["NodeIdentity", "NodeStatusRecord", "Phase"]
