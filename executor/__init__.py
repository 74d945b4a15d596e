"""Single-surface task executor."""

from executor.machine import ExecutionStateMachine, MachineState

__all__ = ["ExecutionStateMachine", "MachineState"]
