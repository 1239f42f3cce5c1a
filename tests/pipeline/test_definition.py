"""Tests for pipeline definitions."""

import pytest

from pipecomp.core import MissingParameterError, PipelineDefinitionError, ValidationError
from pipecomp.pipeline import PipelineDefinition, PipelineStep


def square(x, power=2):
    return x**power


def offset(x, shift):
    return x + shift


def noisy(x, scale=1.0, random_state=None):
    return x + scale * random_state.normal()


class TestPipelineStep:
    """Test step construction and parameter constraints."""

    def test_parameters_from_signature(self):
        step = PipelineStep("square", square)
        assert step.parameters == ["power"]
        assert step.signature_defaults == {"power": 2}
        assert not step.accepts_random_state

    def test_random_state_is_not_a_parameter(self):
        step = PipelineStep("noisy", noisy)
        assert step.parameters == ["scale"]
        assert step.accepts_random_state

    def test_var_keyword_ignored(self):
        step = PipelineStep("kw", lambda x, a=1, **kwargs: x)
        assert step.parameters == ["a"]

    def test_function_without_input(self):
        with pytest.raises(PipelineDefinitionError, match="first positional"):
            PipelineStep("bad", lambda *, a: a)

    def test_not_callable(self):
        with pytest.raises(PipelineDefinitionError, match="callable"):
            PipelineStep("bad", 42)

    def test_constraint_on_unknown_parameter(self):
        with pytest.raises(PipelineDefinitionError, match="unknown parameters"):
            PipelineStep("square", square, parameter_constraints={"exponent": {"min": 0}})

    def test_constraints(self):
        step = PipelineStep(
            "square",
            square,
            parameter_constraints={"power": {"type": int, "range": (1, 3)}},
        )
        assert step.validate_parameters({"power": 2})
        with pytest.raises(ValidationError, match="out of range"):
            step.validate_parameters({"power": 5})
        with pytest.raises(ValidationError, match="type"):
            step.validate_parameters({"power": 2.5})

    def test_choices_and_non_numeric_bounds(self):
        step = PipelineStep(
            "noisy",
            lambda x, n="auto": x,
            parameter_constraints={"n": {"min": 0}},
        )
        assert step.validate_parameters({"n": "auto"})
        with pytest.raises(ValidationError, match="below minimum"):
            step.validate_parameters({"n": -1})

    def test_run_injects_random_state(self):
        import numpy as np

        step = PipelineStep("noisy", noisy)
        a = step.run(0.0, {"scale": 1.0}, random_state=np.random.default_rng(1))
        b = step.run(0.0, {"scale": 1.0}, random_state=np.random.default_rng(1))
        assert a == b


class TestPipelineDefinition:
    """Test pipeline structure and parameter resolution."""

    @pytest.fixture
    def pipeline(self):
        return PipelineDefinition(
            [PipelineStep("square", square), PipelineStep("offset", offset, evaluation=lambda y: {"y": y})],
            default_arguments={"shift": 0},
        )

    def test_arguments(self, pipeline):
        assert pipeline.arguments() == {"square": ["power"], "offset": ["shift"]}
        assert pipeline.all_arguments() == ["power", "shift"]
        assert pipeline.step_of("shift") == "offset"
        assert pipeline.parameters_up_to("square") == ["power"]
        assert pipeline.evaluated_steps() == ["offset"]
        assert len(pipeline) == 2

    def test_mapping_of_functions(self):
        pipeline = PipelineDefinition({"square": square, "offset": offset})
        assert pipeline.step_names == ["square", "offset"]

    def test_empty_pipeline(self):
        with pytest.raises(PipelineDefinitionError, match="at least one step"):
            PipelineDefinition([])

    def test_duplicated_step_name(self):
        with pytest.raises(PipelineDefinitionError, match="Duplicated step"):
            PipelineDefinition([PipelineStep("s", square), PipelineStep("s", offset)])

    def test_parameter_shared_by_steps(self):
        with pytest.raises(PipelineDefinitionError, match="used by both"):
            PipelineDefinition([PipelineStep("a", square), PipelineStep("b", square)])

    def test_default_for_unknown_parameter(self):
        with pytest.raises(PipelineDefinitionError, match="unknown parameters"):
            PipelineDefinition([PipelineStep("square", square)], default_arguments={"x": 1})

    def test_explicit_defaults_override_signature(self, pipeline):
        pipeline.set_default("power", 3)
        assert pipeline.default_arguments == {"power": 3, "shift": 0}

    def test_set_default_unknown(self, pipeline):
        with pytest.raises(PipelineDefinitionError, match="belongs to no step"):
            pipeline.set_default("nope", 1)

    def test_add_step(self, pipeline):
        pipeline.add_step(PipelineStep("noisy", noisy), after="square")
        assert pipeline.step_names == ["square", "noisy", "offset"]
        pipeline.add_step(PipelineStep("first", lambda x, z=0: x))
        assert pipeline.step_names[0] == "first"

    def test_add_step_rolls_back_on_conflict(self, pipeline):
        with pytest.raises(PipelineDefinitionError):
            pipeline.add_step(PipelineStep("again", square), after="offset")
        assert pipeline.step_names == ["square", "offset"]

    def test_remove_step(self, pipeline):
        removed = pipeline.remove_step("offset")
        assert removed.name == "offset"
        assert pipeline.step_names == ["square"]
        assert "shift" not in pipeline.default_arguments
        with pytest.raises(PipelineDefinitionError, match="only step"):
            pipeline.remove_step("square")

    def test_set_evaluation(self, pipeline):
        pipeline.set_evaluation("square", lambda y: {"sq": y})
        assert pipeline.evaluated_steps() == ["square", "offset"]

    def test_unknown_step(self, pipeline):
        with pytest.raises(PipelineDefinitionError, match="Unknown step"):
            pipeline.get_step("missing")

    def test_resolve_parameters(self, pipeline):
        resolved = pipeline.resolve_parameters({"power": [1, 2], "shift": 5})
        assert resolved == {"power": [1, 2], "shift": [5]}

    def test_resolve_uses_defaults(self, pipeline):
        assert pipeline.resolve_parameters(None) == {"power": [2], "shift": [0]}

    def test_resolve_keeps_ranges(self, pipeline):
        assert pipeline.resolve_parameters({"power": (1, 3)})["power"] == (1, 3)

    def test_resolve_warns_on_unknown(self, pipeline):
        with pytest.warns(UserWarning, match="not parameters"):
            pipeline.resolve_parameters({"nope": [1]})

    def test_resolve_empty_alternatives(self, pipeline):
        with pytest.raises(ValidationError, match="Empty alternatives"):
            pipeline.resolve_parameters({"power": []})

    def test_resolve_missing_parameter(self):
        pipeline = PipelineDefinition([PipelineStep("offset", offset)])
        with pytest.raises(MissingParameterError) as exc_info:
            pipeline.resolve_parameters({})
        assert exc_info.value.parameter == "shift"

    def test_repr(self, pipeline):
        text = repr(pipeline)
        assert "square(power)" in text
        assert "offset(shift) *" in text
