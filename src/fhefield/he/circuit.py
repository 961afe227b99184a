"""
Circuit compiler and executor.

A Circuit is a gate graph over named wires. Compilation validates it and
produces an ExecutionPlan:

    - every gate names a supported operation with a valid input count
    - every input wire is a circuit input or the output of some gate
    - no wire is produced twice, and the wiring is acyclic
    - every declared output is bound
    - multiplicative depth does not exceed the configured maximum

Gates are ordered topologically (Kahn's algorithm, ties broken by list
order), so a list that is already valid executes exactly as written.

Execution binds inputs, runs the plan gate by gate through the engine and
bootstraps any gate result whose noise exceeds the maximum when the circuit
or gate opted into auto-bootstrap.
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from ..errors import CircuitDependencyError, CircuitTooDeepError, FheFieldError, UnsupportedOperationError
from .constants import BASE_NOISE, MAX_CIRCUIT_DEPTH
from .core import BootstrappingKey, Ciphertext
from .engine import OPERATION_ARITY, HomomorphicEngine, check_arity
from .params import GrowthFactors

logger = logging.getLogger(__name__)


class Gate(BaseModel):
    """One operation in a circuit."""

    operation: str
    inputs: List[str]
    output: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class Circuit(BaseModel):
    """Gate graph with ordered, uniquely named inputs and outputs."""

    name: str
    inputs: List[str]
    outputs: List[str]
    gates: List[Gate]
    auto_bootstrap: bool = True

    @field_validator("inputs")
    @classmethod
    def _unique_inputs(cls, value: List[str]) -> List[str]:
        if len(set(value)) != len(value):
            raise ValueError("circuit input names must be unique")
        return value


@dataclass(frozen=True)
class PlannedOperation:
    """A validated gate with its computed depth."""

    index: int
    operation: str
    inputs: Tuple[str, ...]
    output: str
    depth: int
    rotation_amount: int = 1
    auto_bootstrap: Optional[bool] = None
    parameters: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutionPlan:
    """Static summary of a compiled circuit."""

    operations: Tuple[PlannedOperation, ...]
    input_count: int
    output_count: int
    depth: int
    estimated_noise_growth: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operations": [
                {"type": op.operation, "inputs": list(op.inputs), "output": op.output, "depth": op.depth}
                for op in self.operations
            ],
            "input_count": self.input_count,
            "output_count": self.output_count,
            "depth": self.depth,
            "estimated_noise_growth": self.estimated_noise_growth,
        }


class CircuitCompiler:
    """Validates circuits and computes their execution plans."""

    def __init__(self, max_depth: int = MAX_CIRCUIT_DEPTH, growth: Optional[GrowthFactors] = None):
        self.max_depth = max_depth
        self.growth = growth or GrowthFactors()

    def compile(self, circuit: Circuit) -> ExecutionPlan:
        """
        Compile ``circuit`` into an ExecutionPlan.

        Raises:
            UnsupportedOperationError: a gate names an unknown operation
            ArityError: a gate has the wrong number of inputs
            CircuitDependencyError: unknown, duplicate, cyclic or unbound wires
            CircuitTooDeepError: depth exceeds ``max_depth``
        """
        for gate in circuit.gates:
            operation = gate.operation.lower()
            if operation not in OPERATION_ARITY:
                raise UnsupportedOperationError(gate.operation)
            check_arity(operation, len(gate.inputs))

        order = self._topological_order(circuit)

        depths: Dict[str, int] = {name: 0 for name in circuit.inputs}
        noise = BASE_NOISE
        max_depth = 0
        operations: List[PlannedOperation] = []

        for index in order:
            gate = circuit.gates[index]
            operation = gate.operation.lower()
            gate_depth = max(depths[w] for w in gate.inputs)
            if operation == "multiply":
                gate_depth += 1
            depths[gate.output] = gate_depth
            max_depth = max(max_depth, gate_depth)

            if operation == "multiply":
                noise *= self.growth.multiply
            elif operation == "add":
                noise *= self.growth.add
            elif operation == "rotate":
                noise *= self.growth.rotate

            operations.append(
                PlannedOperation(
                    index=index,
                    operation=operation,
                    inputs=tuple(gate.inputs),
                    output=gate.output,
                    depth=gate_depth,
                    rotation_amount=_rotation_amount(gate) if operation == "rotate" else 1,
                    auto_bootstrap=gate.parameters.get("auto_bootstrap"),
                    parameters=dict(gate.parameters),
                )
            )

        if max_depth > self.max_depth:
            raise CircuitTooDeepError(max_depth, self.max_depth, circuit_name=circuit.name)

        plan = ExecutionPlan(
            operations=tuple(operations),
            input_count=len(circuit.inputs),
            output_count=len(circuit.outputs),
            depth=max_depth,
            estimated_noise_growth=noise,
        )
        logger.debug(
            f"Compiled circuit {circuit.name}: {len(operations)} gates, depth {max_depth}, "
            f"estimated noise {noise:.2f}"
        )
        return plan

    def validate(self, circuit: Circuit) -> List[str]:
        """Return a list of problems; empty when the circuit compiles."""
        try:
            self.compile(circuit)
        except FheFieldError as e:
            return [e.message]
        return []

    def _topological_order(self, circuit: Circuit) -> List[int]:
        declared = set(circuit.inputs)
        producer: Dict[str, int] = {}
        for index, gate in enumerate(circuit.gates):
            if gate.output in declared or gate.output in producer:
                raise CircuitDependencyError("wire is produced more than once", [gate.output])
            producer[gate.output] = index

        unknown = {
            wire
            for gate in circuit.gates
            for wire in gate.inputs
            if wire not in declared and wire not in producer
        }
        if unknown:
            raise CircuitDependencyError("gate input references an unbound wire", sorted(unknown))

        unbound_outputs = [w for w in circuit.outputs if w not in declared and w not in producer]
        if unbound_outputs:
            raise CircuitDependencyError("circuit output is never bound", unbound_outputs)

        pending: List[int] = []
        dependents: Dict[int, List[int]] = {i: [] for i in range(len(circuit.gates))}
        for index, gate in enumerate(circuit.gates):
            upstream = {producer[w] for w in gate.inputs if w in producer}
            pending.append(len(upstream))
            for source in upstream:
                dependents[source].append(index)

        ready = [i for i, count in enumerate(pending) if count == 0]
        heapq.heapify(ready)
        order: List[int] = []
        while ready:
            index = heapq.heappop(ready)
            order.append(index)
            for dependent in dependents[index]:
                pending[dependent] -= 1
                if pending[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) != len(circuit.gates):
            stuck = [circuit.gates[i].output for i, count in enumerate(pending) if count > 0]
            raise CircuitDependencyError("circuit wiring contains a cycle", stuck)
        return order


def _rotation_amount(gate: Gate) -> int:
    amount = gate.parameters.get("amount", 1)
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise UnsupportedOperationError(gate.operation, "rotation amount must be an integer")
    return amount


class CircuitExecutor:
    """
    Runs compiled circuits against concrete ciphertexts.

    ``execute`` is synchronous and CPU-bound; the service submits it to the
    compute pool.
    """

    def __init__(self, engine: HomomorphicEngine, max_depth: int = MAX_CIRCUIT_DEPTH):
        self.engine = engine
        self.max_depth = max_depth
        self.compiler = CircuitCompiler(max_depth=max_depth, growth=engine.growth)

    def execute(
        self,
        circuit: Circuit,
        bound_inputs: Mapping[str, Ciphertext],
        bootstrapping_key: Optional[BootstrappingKey] = None,
        plan: Optional[ExecutionPlan] = None,
    ) -> Dict[str, Ciphertext]:
        """
        Execute ``circuit`` and return its declared outputs.

        Raises:
            CircuitDependencyError: a declared input is missing, or an
                undeclared name is bound
            CircuitTooDeepError: realized depth exceeds the maximum
            NoiseOverflowError: a gate result is exhausted and auto-bootstrap
                is off for that gate
        """
        plan = plan or self.compiler.compile(circuit)

        missing = [name for name in circuit.inputs if name not in bound_inputs]
        if missing:
            raise CircuitDependencyError("circuit input not supplied", missing)
        undeclared = [name for name in bound_inputs if name not in circuit.inputs]
        if undeclared:
            raise CircuitDependencyError("supplied input is not declared by the circuit", undeclared)

        wires: Dict[str, Ciphertext] = dict(bound_inputs)
        bootstraps = 0

        for op in plan.operations:
            unbound = [w for w in op.inputs if w not in wires]
            if unbound:
                raise CircuitDependencyError(f"gate {op.index} reached before its inputs were bound", unbound)

            auto_bootstrap = circuit.auto_bootstrap if op.auto_bootstrap is None else bool(op.auto_bootstrap)
            evaluation = self.engine.evaluate(
                op.operation,
                [wires[w] for w in op.inputs],
                rotation_amount=op.rotation_amount,
                auto_bootstrap=auto_bootstrap,
                bootstrapping_key=bootstrapping_key,
            )
            result = evaluation.ciphertext
            if result.multiplicative_depth > self.max_depth:
                raise CircuitTooDeepError(result.multiplicative_depth, self.max_depth, circuit_name=circuit.name)
            if evaluation.bootstrapped:
                bootstraps += 1
            wires[op.output] = result

        logger.info(
            f"Executed circuit {circuit.name}: {len(plan.operations)} gates, {bootstraps} automatic bootstraps"
        )
        return {name: wires[name] for name in circuit.outputs}


__all__ = [
    "Gate",
    "Circuit",
    "PlannedOperation",
    "ExecutionPlan",
    "CircuitCompiler",
    "CircuitExecutor",
]
