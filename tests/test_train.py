from collections import defaultdict
import pickle

import numpy as np
import pytest

from constants import START
from errors import FormatMismatchError
from pos_tagger import HMMModel, POSTagger, train


def test_single_sentence_tables():
    model = train(["N V"], ["dog runs"]).unwrap()

    assert model.transitions[START]["N"] == 0.0
    assert model.transitions["N"]["V"] == 0.0
    assert model.emissions["dog"]["N"] == 0.0
    assert model.emissions["runs"]["V"] == 0.0
    # V only ends sentences
    assert dict(model.transitions["V"]) == {}


def test_transitions_sum_to_one(model):
    for tag, row in model.transitions.items():
        if row:
            assert np.isclose(np.exp(list(row.values())).sum(), 1.0), tag


def test_every_training_tag_has_a_transition_entry(model, corpus):
    _, tags = corpus
    for tag in {t for line in tags for t in line}:
        assert tag in model.transitions


def test_emissions_normalized_per_tag(model):
    totals = defaultdict(float)
    for row in model.emissions.values():
        for tag, log_prob in row.items():
            totals[tag] += np.exp(log_prob)

    assert set(totals) == {"DET", "N", "V", ".", "ADV", "ADJ"}
    for tag, total in totals.items():
        assert np.isclose(total, 1.0), tag


def test_emission_denominator_is_tag_count(model):
    # "the" is DET in 3 of 4 DET occurrences
    assert np.isclose(model.emissions["the"]["DET"], np.log(3 / 4))
    # START is counted once per sentence
    assert np.isclose(model.transitions[START]["DET"], np.log(4 / 5))
    assert np.isclose(model.transitions[START]["N"], np.log(1 / 5))


def test_words_are_lowercased(model):
    assert "the" in model.emissions
    assert "The" not in model.emissions
    assert model.knows("THE")


def test_tags_excludes_start(model):
    assert model.tags == [".", "ADJ", "ADV", "DET", "N", "V"]


def test_token_mismatch_stops_ingestion():
    result = train(["N V", "N V N", "ADJ N"], ["dog runs", "cat jumps", "big dog"])

    assert not result.ok
    assert isinstance(result.fault, FormatMismatchError)
    assert result.fault.index == 1
    assert result.fault.n_tags == 3
    assert result.fault.n_words == 2
    assert result.ingested == 1

    # Nothing from the mismatched pair or after it leaked into the counts
    clean = train(["N V"], ["dog runs"]).model
    assert {k: dict(v) for k, v in result.model.transitions.items()} == \
        {k: dict(v) for k, v in clean.transitions.items()}
    assert "cat" not in result.model.emissions
    assert "big" not in result.model.emissions
    assert "ADJ" not in result.model.transitions


def test_unwrap_refuses_partial_model():
    result = train(["N V", "N"], ["dog runs", "cat jumps"])

    with pytest.raises(FormatMismatchError):
        result.unwrap()
    assert result.unwrap(allow_partial=True) is result.model


def test_line_count_mismatch():
    result = train(["N V", "N V"], ["dog runs"])

    assert result.fault.index == 1
    assert result.fault.n_tags == 2
    assert result.fault.n_words is None
    assert result.ingested == 1
    assert "different number of lines" in str(result.fault)


def test_empty_lines_are_skipped():
    model = train(["N V", "", "N V"], ["dog runs", "", "cat jumps"]).unwrap()

    assert model.transitions[START]["N"] == 0.0


def test_empty_training_gives_empty_model():
    result = train([], [])

    assert result.ok
    assert result.ingested == 0
    assert len(result.model.transitions) == 0
    assert len(result.model.emissions) == 0


def test_start_is_reserved():
    with pytest.raises(ValueError):
        train([f"N {START}"], ["dog runs"])


def test_model_is_read_only(model):
    with pytest.raises(TypeError):
        model.transitions["N"] = {}
    with pytest.raises(TypeError):
        model.emissions["dog"]["V"] = 0.0


def test_model_pickles(model):
    restored = pickle.loads(pickle.dumps(model))

    assert isinstance(restored, HMMModel)
    assert {k: dict(v) for k, v in restored.emissions.items()} == \
        {k: dict(v) for k, v in model.emissions.items()}
    with pytest.raises(TypeError):
        restored.transitions["N"] = {}


def test_tagger_strict_training_keeps_previous_model(corpus):
    pos_tagger = POSTagger()
    pos_tagger.train(corpus)
    before = pos_tagger.model

    with pytest.raises(FormatMismatchError):
        pos_tagger.train(([["dog", "runs"]], [["N"]]), allow_partial=False)
    assert pos_tagger.model is before


def test_tagger_lenient_training_uses_partial_model():
    pos_tagger = POSTagger()
    result = pos_tagger.train(([["dog", "runs"], ["cat"]], [["N", "V"], ["N", "V"]]))

    assert not result.ok
    assert pos_tagger.inference("dog runs") == ["N", "V"]
