from __future__ import annotations

import json

import pytest

from patchscript.app.dsl.channels import EngineChannelCounter
from patchscript.app.dsl.errors import DuplicateModuleIdError, ModuleIdNotFoundError, UnknownModuleTypeError
from patchscript.app.dsl.factories import CompilationContext, build_factories
from patchscript.app.dsl.graph_builder import (
    BaseCollection,
    DeferredCollection,
    DeferredOutput,
    GraphBuilder,
    ModuleOutput,
    cable,
    collection,
    disconnected,
    range_collection,
)
from patchscript.app.dsl.params_schema import process_schemas
from patchscript.app.services.schema_service import SchemaService


def _context() -> CompilationContext:
    schemas = process_schemas(SchemaService().list_schemas())
    return CompilationContext(
        builder=GraphBuilder(schemas, EngineChannelCounter(schemas)),
        factories=build_factories(schemas),
    )


def _assert_json_only(value: object) -> None:
    assert not isinstance(value, (ModuleOutput, BaseCollection))
    if isinstance(value, dict):
        for item in value.values():
            _assert_json_only(item)
    elif isinstance(value, list):
        for item in value:
            _assert_json_only(item)


def test_generated_ids_count_per_type() -> None:
    builder = _context().builder

    assert builder.add_module("sine").id == "sine-1"
    assert builder.add_module("sine").id == "sine-2"
    assert builder.add_module("saw").id == "saw-1"


def test_generated_ids_skip_explicitly_claimed_ids() -> None:
    builder = _context().builder

    assert builder.add_module("sine").id == "sine-1"
    builder.add_module("sine", "sine-2")
    assert builder.add_module("sine").id == "sine-3"


def test_duplicate_and_unknown_modules_raise() -> None:
    builder = _context().builder
    builder.add_module("sine", "lead")

    with pytest.raises(DuplicateModuleIdError):
        builder.add_module("saw", "lead")
    with pytest.raises(UnknownModuleTypeError):
        builder.add_module("theremin")
    with pytest.raises(ModuleIdNotFoundError):
        builder.set_param("missing", "freq", 1)


def test_signal_params_default_to_disconnected() -> None:
    builder = _context().builder
    sine = builder.add_module("sine")
    mix = builder.add_module("mix")
    seq = builder.add_module("seq")

    assert builder.params_snapshot(sine.id) == {"freq": disconnected(), "phase": disconnected()}
    assert builder.params_snapshot(mix.id) == {"inputs": []}
    assert "pattern" not in builder.params_snapshot(seq.id)
    assert builder.params_snapshot(seq.id)["clock"] == disconnected()


def test_channel_count_only_grows() -> None:
    builder = _context().builder
    sine = builder.add_module("sine")

    sine.set_param("freq", [0, 1, 2])
    assert sine.channel_count == 3

    sine.set_param("freq", 1)
    assert sine.channel_count == 3


def test_channel_count_is_capped() -> None:
    builder = _context().builder
    sine = builder.add_module("sine")

    sine.set_param("freq", list(range(20)))
    assert sine.channel_count == 16


def test_set_param_normalizes_values() -> None:
    context = _context()
    builder = context.builder
    osc = context.constructors["sine"](1)
    node = builder.add_module("filters.lowpass")

    node.set_param("input", osc)
    node.set_param("cutoff", [osc[0], None, 2])
    node.set_param("resonance", None)
    node.set_param("extra", {"a": None, "b": (1, 2)})

    params = builder.params_snapshot(node.id)
    assert params["input"] == [cable("sine-1", "output", 0)]
    assert params["cutoff"] == [cable("sine-1", "output", 0), disconnected(), 2]
    assert params["resonance"] == disconnected()
    assert params["extra"] == {"a": None, "b": [1, 2]}


def test_set_param_rejects_unsupported_values() -> None:
    builder = _context().builder
    node = builder.add_module("sine")

    with pytest.raises(TypeError):
        node.set_param("freq", object())


def test_patch_without_outputs_has_sourceless_root() -> None:
    patch = _context().builder.to_patch()

    root = patch.get_module("ROOT_OUTPUT")
    assert root is not None
    assert root.module_type == "signal"
    assert root.id_is_explicit is True
    assert root.params["source"] == disconnected()
    assert patch.modules_of_type("mix") == []


def test_outputs_are_mixed_in_call_order() -> None:
    context = _context()
    sine = context.constructors["sine"]
    first = sine(1)
    second = sine(2)

    second.out()
    first.out()
    patch = context.builder.to_patch()

    mix = patch.get_module("mix-1")
    assert mix is not None
    assert mix.params["inputs"] == [cable("sine-2", "output", 0), cable("sine-1", "output", 0)]
    assert patch.get_module("ROOT_OUTPUT").params["source"] == cable("mix-1", "output", 0)
    assert patch.modules_of_type("scaleAndShift") == []


def test_output_gain_adds_scale_stage() -> None:
    context = _context()
    context.constructors["sine"](1).out()
    context.builder.set_output_gain(2.5)

    patch = context.builder.to_patch()

    stage = patch.get_module("scaleAndShift-1")
    assert stage is not None
    assert stage.params["input"] == cable("mix-1", "output", 0)
    assert stage.params["scale"] == 2.5
    assert patch.get_module("ROOT_OUTPUT").params["source"] == [cable("scaleAndShift-1", "output", 0)]


def test_to_patch_runs_once() -> None:
    builder = _context().builder
    builder.to_patch()

    with pytest.raises(RuntimeError):
        builder.to_patch()


def test_finalized_params_hold_no_handles() -> None:
    context = _context()
    sine = context.constructors["sine"]
    osc = sine(collection(sine(1), sine(2)))
    osc.gain(0.5).out()
    context.builder.add_module("signal").set_param("source", {"nested": [osc, {"deep": osc[1]}]})

    patch = context.builder.to_patch()

    for module in patch.modules:
        _assert_json_only(module.params)
    json.dumps(patch.model_dump(by_alias=True))


def test_deferred_output_resolves_to_target() -> None:
    context = _context()
    builder = context.builder
    feedback = DeferredOutput(builder)
    lowpass = context.constructors["filters.lowpass"](feedback, 0)
    feedback.set(context.constructors["sine"](1))

    patch = builder.to_patch()

    assert feedback.module_id == "DEFERRED-1"
    assert patch.get_module(lowpass[0].module_id).params["input"] == cable("sine-1", "output", 0)


def test_unset_deferred_output_becomes_disconnected() -> None:
    context = _context()
    feedback = DeferredOutput(context.builder)
    lowpass = context.constructors["filters.lowpass"](feedback)

    patch = context.builder.to_patch()

    assert patch.get_module(lowpass[0].module_id).params["input"] == disconnected()


def test_deferred_placeholders_in_strings_are_rewritten() -> None:
    context = _context()
    feedback = DeferredOutput(context.builder)
    seq = context.constructors["seq"](f"{feedback} c4")
    feedback.set(context.constructors["sine"](1)[0])

    patch = context.builder.to_patch()

    assert patch.get_module(seq.module_id).params["pattern"] == "module(sine-1:output:0) c4"


def test_unset_deferred_placeholder_in_string_raises() -> None:
    context = _context()
    feedback = DeferredOutput(context.builder)
    context.constructors["seq"](f"{feedback} c4")

    with pytest.raises(ValueError):
        context.builder.to_patch()


def test_deferred_collection_cycles_values() -> None:
    context = _context()
    builder = context.builder
    sine = context.constructors["sine"]
    first, second = sine(1)[0], sine(2)[0]
    deferred = DeferredCollection(*[DeferredOutput(builder) for _ in range(3)])

    deferred.set(collection(first, second))

    assert [item.resolve() for item in deferred] == [first, second, first]


def test_circular_deferred_outputs_raise() -> None:
    builder = _context().builder
    first = DeferredOutput(builder)
    second = DeferredOutput(builder)
    first.set(second)
    second.set(first)

    with pytest.raises(ValueError):
        first.resolve()


def test_scope_records_first_handle_only() -> None:
    context = _context()
    osc = context.constructors["sine"]([1, 2])

    osc.scope(trigger_threshold=0.25)
    patch = context.builder.to_patch()

    assert len(patch.scopes) == 1
    scope = patch.scopes[0]
    assert scope.item.module_id == "sine-1"
    assert scope.item.channel == 0
    assert scope.ms_per_frame == 500
    assert scope.trigger_threshold == 250
    assert scope.range == (-5.0, 5.0)


def test_scopes_on_deferred_outputs_are_redirected_or_dropped() -> None:
    context = _context()
    builder = context.builder
    resolved = DeferredOutput(builder)
    unset = DeferredOutput(builder)
    resolved.scope(range=(0, 10))
    unset.scope()
    resolved.set(context.constructors["saw"](1))

    patch = builder.to_patch()

    assert len(patch.scopes) == 1
    assert patch.scopes[0].item.module_id == "saw-1"
    assert patch.scopes[0].range == (0.0, 10.0)


def test_root_clock_settings_are_applied() -> None:
    context = _context()
    builder = context.builder
    context.constructors["clock"](id="ROOT_CLOCK")
    builder.set_tempo(1.5)
    builder.set_clock_run(5)

    patch = builder.to_patch()

    clock = patch.get_module("ROOT_CLOCK")
    assert clock.params["tempo"] == 1.5
    assert clock.params["run"] == 5
    assert clock.params["reset"] == disconnected()


def test_range_collection_requires_ranged_outputs() -> None:
    context = _context()
    ranged = context.constructors["sine"](1)
    unranged = context.constructors["mix"]([])

    assert len(range_collection(ranged, ranged)) == 2
    with pytest.raises(TypeError):
        range_collection(ranged, unranged)


def test_out_routes_channels_and_per_call_gain() -> None:
    context = _context()
    sine = context.constructors["sine"]
    lead = sine(1)
    bass = sine(2)
    pad = sine(3)

    lead.out()
    bass.out(gain=0.5)
    pad.out(channel=2)
    patch = context.builder.to_patch()

    assert patch.get_module("mix-1").params["inputs"] == [cable("sine-2", "output", 0)]
    bass_stage = patch.get_module("scaleAndShift-1")
    assert bass_stage.params["input"] == cable("mix-1", "output", 0)
    assert bass_stage.params["scale"] == 0.5
    assert patch.get_module("mix-2").params["inputs"] == [
        cable("sine-1", "output", 0),
        cable("scaleAndShift-1", "output", 0),
    ]
    assert patch.get_module("mix-3").params["inputs"] == [cable("sine-3", "output", 0)]
    assert patch.get_module("ROOT_OUTPUT").params["source"] == [
        cable("mix-2", "output", 0),
        disconnected(),
        cable("mix-3", "output", 0),
    ]


def test_plain_outputs_share_one_mix() -> None:
    context = _context()
    sine = context.constructors["sine"]

    sine(1).out()
    sine(2).out(channel=0)
    patch = context.builder.to_patch()

    assert len(patch.modules_of_type("mix")) == 1


@pytest.mark.parametrize("channel", [-1, 16, 1.5, True])
def test_out_rejects_invalid_channels(channel: object) -> None:
    context = _context()

    with pytest.raises(ValueError):
        context.constructors["sine"](1).out(channel=channel)


def test_pipe_mix_crossfades_dry_and_wet() -> None:
    context = _context()
    builder = context.builder
    osc = context.constructors["sine"](1)

    blended = osc.pipe_mix(lambda dry: context.constructors["filters.lowpass"](dry, 2), 1)

    assert blended[0].module_id == "scaleAndShift-2"
    assert builder.params_snapshot("clamp-1") == {"input": 1, "min": 0, "max": 5}
    remap = builder.params_snapshot("remap-1")
    assert [remap[name] for name in ("input", "inMin", "inMax", "outMin", "outMax")] == [1, 0, 5, 5, 0]
    assert builder.params_snapshot("clamp-2")["input"] == [cable("remap-1", "output", 0)]

    wet = builder.params_snapshot("scaleAndShift-1")
    assert wet["input"] == [cable("filters.lowpass-1", "output", 0)]
    assert wet["scale"] == [cable("clamp-1", "output", 0)]

    mixed = builder.params_snapshot("scaleAndShift-2")
    assert mixed["input"] == [cable("sine-1", "output", 0)]
    assert mixed["scale"] == [cable("clamp-2", "output", 0)]
    assert mixed["shift"] == [cable("scaleAndShift-1", "output", 0)]


def test_pipe_mix_on_a_single_handle() -> None:
    context = _context()
    osc = context.constructors["sine"](1)

    blended = osc[0].pipe_mix(lambda dry: dry.gain(2))

    assert context.builder.params_snapshot(blended[0].module_id)["input"] == [cable("sine-1", "output", 0)]
    assert context.builder.params_snapshot("clamp-1")["input"] == 2.5


def test_pipe_mix_requires_module_outputs() -> None:
    context = _context()
    osc = context.constructors["sine"](1)

    with pytest.raises(TypeError):
        osc.pipe_mix(lambda dry: 3)
