import numpy as np
import pytest

from sequence_memory import (
    SDR,
    ConfigurationError,
    DimensionMismatchError,
    InputError,
    StateError,
    TemporalMemory,
    TemporalMemoryParameters,
)


def test_repeated_single_column_bursts_deterministically():
    """Three identical inputs on a fresh memory: burst, grow on cell 0, then move to cell 1."""
    tm = TemporalMemory([2], cells_per_column=4, seed=42)

    tm.compute([0], learn=True)
    assert tm.get_active_cells().get_sparse().tolist() == [0, 1, 2, 3]
    assert tm.get_winner_cells().get_sparse().tolist() == [0]
    assert tm.connections.num_segments() == 0

    tm.compute([0], learn=True)
    assert tm.get_active_cells().get_sparse().tolist() == [0, 1, 2, 3]
    assert tm.get_winner_cells().get_sparse().tolist() == [0]
    assert tm.connections.num_segments(0) == 1
    segment = tm.connections.segments_for_cell(0)[0]
    synapses = tm.connections.synapses_for_segment(segment)
    assert [tm.connections.data_for_synapse(s).presynaptic_cell for s in synapses] == [0]

    tm.compute([0], learn=True)
    assert tm.get_active_cells().get_sparse().tolist() == [0, 1, 2, 3]
    assert tm.get_winner_cells().get_sparse().tolist() == [1]
    assert tm.get_bursting_columns().get_sparse().tolist() == [0]
    assert tm.iteration == 3


def test_cell_outputs_use_cell_dimensions():
    tm = TemporalMemory([3, 2], cells_per_column=4)
    tm.compute([0, 5])
    active = tm.get_active_cells()
    assert active.dimensions == [3, 2, 4]
    assert active.get_sparse().tolist() == [0, 1, 2, 3, 20, 21, 22, 23]


def _random_patterns(num_columns, active_per_pattern, count, seed):
    rng = np.random.default_rng(seed)
    return [sorted(rng.choice(num_columns, size=active_per_pattern, replace=False).tolist()) for _ in range(count)]


def test_identical_instances_stay_identical():
    params = dict(cells_per_column=4, activation_threshold=3, min_threshold=2, max_new_synapse_count=6, seed=7)
    tm_a = TemporalMemory([32], **params)
    tm_b = TemporalMemory([32], **params)
    patterns = _random_patterns(32, 4, 5, seed=0)

    for _ in range(10):
        for columns in patterns:
            tm_a.compute(columns, learn=True)
            tm_b.compute(columns, learn=True)
            assert tm_a.get_active_cells() == tm_b.get_active_cells()
            assert tm_a.get_winner_cells() == tm_b.get_winner_cells()

    assert tm_a == tm_b
    assert tm_a.connections.num_segments() > 0


def test_two_column_cycle_converges():
    """Permanences on the predicting segment rise monotonically to 1 and bursting stops."""
    tm = TemporalMemory(
        [2],
        cells_per_column=4,
        activation_threshold=1,
        min_threshold=1,
        max_new_synapse_count=4,
        initial_permanence=0.21,
        connected_permanence=0.5,
    )
    tm.compute([0])
    tm.compute([1])
    segment = tm.connections.segments_for_cell(4)[0]
    synapse = tm.connections.synapses_for_segment(segment)[0]
    assert tm.connections.data_for_synapse(synapse).presynaptic_cell == 0

    permanences = []
    bursting = []
    for _ in range(15):
        tm.compute([0])
        bursting.append(tm.get_bursting_columns().get_sum())
        tm.compute([1])
        bursting.append(tm.get_bursting_columns().get_sum())
        permanences.append(tm.connections.data_for_synapse(synapse).permanence)

    assert all(later >= earlier for earlier, later in zip(permanences, permanences[1:]))
    assert permanences[-1] == pytest.approx(1.0)
    assert bursting[-10:] == [0] * 10
    assert tm.get_active_cells().get_sparse().tolist() == [4]


def test_predicted_column_activates_only_predicted_cells():
    tm = TemporalMemory([2], cells_per_column=4, activation_threshold=1, min_threshold=1, connected_permanence=0.2)
    segment = tm.create_segment(6)
    tm.connections.create_synapse(segment, 0, 0.5)

    tm.compute([0])
    tm.activate_dendrites(learn=False)
    assert tm.get_active_segments() == [segment]
    assert tm.get_predictive_cells().get_sparse().tolist() == [6]

    tm.activate_cells([1], learn=False)
    assert tm.get_active_cells().get_sparse().tolist() == [6]
    assert tm.get_winner_cells().get_sparse().tolist() == [6]
    assert tm.get_bursting_columns().get_sum() == 0


def test_punishes_matching_segments_on_non_winner_cells():
    tm = TemporalMemory(
        [2],
        cells_per_column=2,
        activation_threshold=2,
        min_threshold=1,
        predicted_segment_decrement=0.05,
    )
    best = tm.create_segment(2)
    best_synapses = [tm.connections.create_synapse(best, cell, 0.3) for cell in (0, 1)]
    other = tm.create_segment(3)
    other_synapse = tm.connections.create_synapse(other, 0, 0.3)

    tm.compute([0])
    tm.compute([1])

    assert tm.get_winner_cells().get_sparse().tolist() == [2]
    for synapse in best_synapses:
        assert tm.connections.data_for_synapse(synapse).permanence == pytest.approx(0.4)
    assert tm.connections.data_for_synapse(other_synapse).permanence == pytest.approx(0.25)


def test_extra_inputs_drive_learning_and_prediction():
    tm = TemporalMemory(
        [2],
        cells_per_column=2,
        extra=3,
        activation_threshold=1,
        min_threshold=1,
        connected_permanence=0.2,
    )
    tm.compute([0], extra_active=[1], extra_winners=[1])

    assert tm.connections.num_segments(0) == 1
    segment = tm.connections.segments_for_cell(0)[0]
    synapse = tm.connections.synapses_for_segment(segment)[0]
    assert tm.connections.data_for_synapse(synapse).presynaptic_cell == tm.number_of_cells() + 1

    tm.reset()
    extra = SDR(3)
    extra.set_sparse([1])
    tm.activate_dendrites(learn=False, extra_active=extra)
    assert tm.get_matching_segments() == [segment]
    assert tm.get_predictive_cells().get_sparse().tolist() == [0]


def test_extra_indices_are_range_checked():
    tm = TemporalMemory([2], cells_per_column=2, extra=3)
    with pytest.raises(InputError):
        tm.compute([0], extra_active=[3])
    plain = TemporalMemory([2], cells_per_column=2)
    with pytest.raises(InputError):
        plain.activate_dendrites(extra_active=[0])
    with pytest.raises(DimensionMismatchError):
        tm.activate_dendrites(extra_active=SDR(4))


def test_active_columns_are_checked():
    tm = TemporalMemory([4], cells_per_column=2)
    for bad in ([1, 0], [2, 2], [4], [-1]):
        tm.reset()
        with pytest.raises(InputError):
            tm.compute(bad)
    tm.reset()
    with pytest.raises(DimensionMismatchError):
        tm.compute(SDR([2, 2]))


def test_unchecked_inputs_accept_unsorted_columns():
    tm = TemporalMemory([4], cells_per_column=2, check_inputs=False)
    tm.compute([3, 1])
    assert tm.get_active_cells().get_sparse().tolist() == [2, 3, 6, 7]


def test_sdr_columns_are_accepted():
    tm = TemporalMemory([2, 2], cells_per_column=2)
    columns = SDR([2, 2])
    columns.set_coordinates([[1], [0]])
    tm.compute(columns)
    assert tm.get_active_cells().get_sparse().tolist() == [4, 5]


def test_activate_cells_requires_dendrites():
    tm = TemporalMemory([2], cells_per_column=2)
    with pytest.raises(StateError):
        tm.activate_cells([0])
    tm.compute([0])
    with pytest.raises(StateError):
        tm.activate_cells([1])


def test_repeated_activate_dendrites_is_a_cache_hit():
    tm = TemporalMemory([2], cells_per_column=2)
    tm.activate_dendrites(learn=True)
    tm.activate_dendrites(learn=True)
    assert tm.iteration == 1
    tm.activate_cells([0])
    tm.activate_dendrites(learn=False)
    assert tm.iteration == 1


def test_accessors_are_empty_before_dendrites():
    tm = TemporalMemory([2], cells_per_column=2)
    assert tm.get_active_segments() == []
    assert tm.get_matching_segments() == []
    assert tm.get_predictive_cells().get_sum() == 0
    assert tm.get_active_cells().get_sum() == 0


def test_reset_clears_timestep_but_keeps_graph():
    tm = TemporalMemory([2], cells_per_column=2)
    tm.compute([0])
    tm.compute([1])
    segments = tm.connections.num_segments()
    assert segments == 1

    tm.reset()
    assert tm.get_active_cells().get_sum() == 0
    assert tm.get_winner_cells().get_sum() == 0
    assert tm.get_bursting_columns().get_sum() == 0
    assert tm.connections.num_segments() == segments

    # With no prior winners, a fresh burst grows nothing.
    tm.compute([1])
    assert tm.connections.num_segments() == segments


def test_learning_disabled_leaves_graph_untouched():
    tm = TemporalMemory([2], cells_per_column=2)
    tm.compute([0], learn=False)
    tm.compute([1], learn=False)
    assert tm.connections.num_segments() == 0
    assert tm.iteration == 0


def test_segment_capacity_is_respected():
    tm = TemporalMemory([1], cells_per_column=1, max_segments_per_cell=2)
    for _ in range(5):
        tm.compute([0])
    assert tm.connections.num_segments(0) == 2


def test_geometry_helpers():
    tm = TemporalMemory([3], cells_per_column=4)
    assert tm.number_of_columns() == 3
    assert tm.number_of_cells() == 12
    assert tm.cells_for_column(2) == [8, 9, 10, 11]
    assert tm.column_for_cell(9) == 2
    with pytest.raises(InputError):
        tm.cells_for_column(3)
    with pytest.raises(InputError):
        tm.column_for_cell(12)


def test_invalid_parameters_raise():
    with pytest.raises(ConfigurationError):
        TemporalMemory([2], cells_per_column=0)
    with pytest.raises(ConfigurationError):
        TemporalMemory([])
    with pytest.raises(ConfigurationError):
        TemporalMemory([2], initial_permanence=1.5)
    with pytest.raises(ConfigurationError):
        TemporalMemory([2], seed=-1)
    with pytest.raises(ConfigurationError):
        TemporalMemory([2], max_segments_per_cell=0)


def test_missing_seed_defaults_to_fixed_value():
    tm = TemporalMemory([2], seed=None)
    assert tm.parameters.seed == 42
    assert tm == TemporalMemory([2])


def test_from_parameters_and_setters():
    params = TemporalMemoryParameters(column_dimensions=[16], cells_per_column=4, activation_threshold=5)
    tm = TemporalMemory.from_parameters(params)
    assert tm.activation_threshold == 5
    assert tm.parameters == params

    tm.permanence_increment = 0.2
    tm.min_threshold = 3
    assert tm.parameters.permanence_increment == 0.2
    assert tm.min_threshold == 3
    with pytest.raises(ConfigurationError):
        tm.permanence_decrement = 2.0
    with pytest.raises(ConfigurationError):
        tm.max_new_synapse_count = -1


def test_seed_replaces_generator_only():
    tm = TemporalMemory([2], cells_per_column=2)
    tm.compute([0])
    tm.seed_(5)
    assert tm.parameters.seed == 5
    assert tm.iteration == 1
    assert tm.get_active_cells().get_sparse().tolist() == [0, 1]
    with pytest.raises(ConfigurationError):
        tm.seed_(-3)


def test_print_helpers(capsys):
    tm = TemporalMemory([4], cells_per_column=2)
    tm.compute([0, 1])
    tm.compute([2, 3])
    tm.print_parameters()
    tm.print_stats()
    out = capsys.readouterr().out
    assert "cells_per_column" in out
    assert "TemporalMemory statistics:" in out
    assert "Segments per cell" in out


def test_punishes_false_prediction_into_inactive_column():
    """A matching segment whose column stays inactive loses permanence on its active synapses."""
    def build():
        tm = TemporalMemory(
            [2],
            cells_per_column=2,
            activation_threshold=1,
            min_threshold=1,
            predicted_segment_decrement=0.05,
        )
        segment = tm.create_segment(2)
        return tm, tm.connections.create_synapse(segment, 0, 0.5)

    tm, synapse = build()
    tm.compute([0])
    tm.compute([0])
    assert tm.connections.data_for_synapse(synapse).permanence == pytest.approx(0.45)

    frozen, frozen_synapse = build()
    frozen.compute([0], learn=False)
    frozen.compute([0], learn=False)
    assert frozen.connections.data_for_synapse(frozen_synapse).permanence == 0.5


def test_non_integer_columns_are_rejected():
    tm = TemporalMemory([4], cells_per_column=2, extra=2)
    with pytest.raises(InputError):
        tm.compute([0.9])
    tm.reset()
    with pytest.raises(InputError):
        tm.compute([0], extra_active=[0.5])
    tm.reset()
    tm.compute(np.array([1.0, 3.0]))
    assert tm.get_active_cells().get_sparse().tolist() == [2, 3, 6, 7]


def test_non_learning_dendrites_then_learning_cells_match_compute():
    """Learning in activate_cells alone advances the iteration exactly like compute(learn=True)."""
    params = dict(cells_per_column=4, activation_threshold=2, min_threshold=1, max_segments_per_cell=2, seed=5)
    tm_a = TemporalMemory([16], **params)
    tm_b = TemporalMemory([16], **params)
    patterns = _random_patterns(16, 3, 4, seed=2)

    for _ in range(6):
        for columns in patterns:
            tm_a.compute(columns, learn=True)
            tm_b.activate_dendrites(learn=False)
            tm_b.activate_cells(columns, learn=True)
            assert tm_b.iteration == tm_a.iteration

    assert tm_a == tm_b
