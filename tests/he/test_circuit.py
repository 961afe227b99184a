"""
Tests for the circuit compiler and executor.
"""

import pydantic
import pytest

from fhefield.errors import (
    ArityError,
    CircuitDependencyError,
    CircuitTooDeepError,
    NoiseOverflowError,
    UnsupportedOperationError,
)
from fhefield.he.circuit import Circuit, CircuitCompiler, CircuitExecutor, Gate
from fhefield.he.core import Ciphertext


def gate(operation, inputs, output, **parameters):
    return Gate(operation=operation, inputs=inputs, output=output, parameters=parameters)


def circuit(gates, inputs=("a", "b"), outputs=("out",), **kwargs):
    return Circuit(name="test", inputs=list(inputs), outputs=list(outputs), gates=gates, **kwargs)


@pytest.fixture
def compiler():
    return CircuitCompiler()


class TestCompileDepth:
    """Tests for multiplicative depth accounting."""

    def test_single_add_has_depth_zero(self, compiler):
        plan = compiler.compile(circuit([gate("add", ["a", "b"], "out")]))
        assert plan.depth == 0

    def test_single_multiply_has_depth_one(self, compiler):
        plan = compiler.compile(circuit([gate("multiply", ["a", "b"], "out")]))
        assert plan.depth == 1

    def test_chained_multiplies_have_depth_two(self, compiler):
        plan = compiler.compile(
            circuit(
                [
                    gate("multiply", ["a", "b"], "ab"),
                    gate("multiply", ["ab", "a"], "out"),
                ]
            )
        )
        assert plan.depth == 2
        assert [op.depth for op in plan.operations] == [1, 2]

    def test_plan_summary(self, compiler):
        plan = compiler.compile(
            circuit(
                [
                    gate("add", ["a", "b"], "s"),
                    gate("rotate", ["s"], "r", amount=2),
                    gate("multiply", ["r", "b"], "out"),
                ]
            )
        )
        assert plan.input_count == 2
        assert plan.output_count == 1
        assert plan.estimated_noise_growth == pytest.approx(3.2 * 1.1 * 1.2 * 2.5)
        assert plan.operations[1].rotation_amount == 2
        assert plan.to_dict()["operations"][0]["type"] == "add"

    def test_too_deep(self):
        gates = [gate("multiply", ["a", "b"], "w0")]
        gates += [gate("multiply", [f"w{i}", "a"], f"w{i + 1}") for i in range(3)]
        with pytest.raises(CircuitTooDeepError) as exc_info:
            CircuitCompiler(max_depth=3).compile(circuit(gates, outputs=["w3"]))
        assert exc_info.value.details["depth"] == 4


class TestCompileValidation:
    """Tests for structural validation."""

    def test_unknown_operation(self, compiler):
        with pytest.raises(UnsupportedOperationError):
            compiler.compile(circuit([gate("divide", ["a", "b"], "out")]))

    def test_gate_arity(self, compiler):
        with pytest.raises(ArityError):
            compiler.compile(circuit([gate("subtract", ["a"], "out")]))

    def test_unknown_wire(self, compiler):
        with pytest.raises(CircuitDependencyError) as exc_info:
            compiler.compile(circuit([gate("add", ["a", "missing"], "out")]))
        assert exc_info.value.details["wires"] == ["missing"]

    def test_cycle(self, compiler):
        gates = [gate("add", ["a", "y"], "x"), gate("add", ["x", "b"], "y"), gate("negate", ["x"], "out")]
        with pytest.raises(CircuitDependencyError):
            compiler.compile(circuit(gates))

    def test_duplicate_producer(self, compiler):
        gates = [gate("add", ["a", "b"], "out"), gate("multiply", ["a", "b"], "out")]
        with pytest.raises(CircuitDependencyError):
            compiler.compile(circuit(gates))

    def test_output_shadowing_input(self, compiler):
        with pytest.raises(CircuitDependencyError):
            compiler.compile(circuit([gate("negate", ["a"], "b")], outputs=["b"]))

    def test_unbound_output(self, compiler):
        with pytest.raises(CircuitDependencyError):
            compiler.compile(circuit([gate("add", ["a", "b"], "out")], outputs=["out", "other"]))

    def test_forward_reference_is_reordered(self, compiler):
        """A gate listed before its producer runs after it."""
        gates = [gate("negate", ["s"], "out"), gate("add", ["a", "b"], "s")]
        plan = compiler.compile(circuit(gates))
        assert [op.output for op in plan.operations] == ["s", "out"]

    def test_duplicate_inputs_rejected_by_model(self):
        with pytest.raises(pydantic.ValidationError):
            Circuit(name="dup", inputs=["a", "a"], outputs=["a"], gates=[])

    def test_validate_reports_problems(self, compiler):
        assert compiler.validate(circuit([gate("add", ["a", "b"], "out")])) == []
        problems = compiler.validate(circuit([gate("nope", ["a"], "out")]))
        assert len(problems) == 1

    def test_rotation_amount_must_be_integer(self, compiler):
        with pytest.raises(UnsupportedOperationError):
            compiler.compile(circuit([gate("rotate", ["a"], "out", amount="two")]))


class TestExecutor:
    """Tests for circuit execution."""

    @pytest.fixture
    def inputs(self, engine, keys):
        return {"a": engine.encrypt(b"\x02", keys), "b": engine.encrypt(b"\x03", keys)}

    def test_add_circuit(self, engine, inputs):
        outputs = CircuitExecutor(engine).execute(circuit([gate("add", ["a", "b"], "out")]), inputs)
        expected = engine.add(inputs["a"], inputs["b"])
        assert outputs == {"out": expected}

    def test_multiply_relinearizes(self, engine, inputs):
        outputs = CircuitExecutor(engine).execute(circuit([gate("multiply", ["a", "b"], "out")]), inputs)
        assert outputs["out"].component_count == 2
        assert outputs["out"].multiplicative_depth == 1

    def test_auto_bootstrap(self, engine, inputs):
        gates = [
            gate("multiply", ["a", "b"], "ab"),
            gate("multiply", ["ab", "ab"], "out"),
        ]
        outputs = CircuitExecutor(engine).execute(circuit(gates), inputs)
        assert outputs["out"].bootstrapped is True
        assert outputs["out"].noise_level == 3.2
        assert outputs["out"].multiplicative_depth == 0

    def test_overflow_when_circuit_opts_out(self, engine, inputs):
        gates = [
            gate("multiply", ["a", "b"], "ab"),
            gate("multiply", ["ab", "ab"], "out"),
        ]
        with pytest.raises(NoiseOverflowError):
            CircuitExecutor(engine).execute(circuit(gates, auto_bootstrap=False), inputs)

    def test_gate_override_of_auto_bootstrap(self, engine, inputs):
        gates = [
            gate("multiply", ["a", "b"], "ab"),
            gate("multiply", ["ab", "ab"], "out", auto_bootstrap=True),
        ]
        outputs = CircuitExecutor(engine).execute(circuit(gates, auto_bootstrap=False), inputs)
        assert outputs["out"].bootstrapped is True

    def test_missing_input(self, engine, inputs):
        with pytest.raises(CircuitDependencyError):
            CircuitExecutor(engine).execute(circuit([gate("add", ["a", "b"], "out")]), {"a": inputs["a"]})

    def test_undeclared_input(self, engine, inputs):
        extra = dict(inputs, c=inputs["a"])
        with pytest.raises(CircuitDependencyError):
            CircuitExecutor(engine).execute(circuit([gate("add", ["a", "b"], "out")]), extra)

    def test_realized_depth_limit(self, engine):
        """Inputs that already carry depth can exceed the limit at run time."""
        deep = Ciphertext(payload=b"\x01", noise_level=3.2, multiplicative_depth=5)
        executor = CircuitExecutor(engine, max_depth=5)
        with pytest.raises(CircuitTooDeepError):
            executor.execute(circuit([gate("multiply", ["a", "b"], "out")]), {"a": deep, "b": deep})

    def test_output_may_be_an_input(self, engine, inputs):
        outputs = CircuitExecutor(engine).execute(circuit([], outputs=["a"]), inputs)
        assert outputs["a"] is inputs["a"]
