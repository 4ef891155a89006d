import matplotlib
matplotlib.use("Agg")

import pytest

from pos_tagger import POSTagger, train


TRAIN_WORDS = [
    "The dog runs .",
    "A cat jumps .",
    "The cat sleeps .",
    "Dogs bark loudly .",
    "The big dog sleeps .",
]
TRAIN_TAGS = [
    "DET N V .",
    "DET N V .",
    "DET N V .",
    "N V ADV .",
    "DET ADJ N V .",
]


@pytest.fixture
def corpus():
    return [s.split() for s in TRAIN_WORDS], [t.split() for t in TRAIN_TAGS]


@pytest.fixture
def model(corpus):
    sentences, tags = corpus
    return train(tags, sentences).unwrap()


@pytest.fixture
def tagger(corpus):
    pos_tagger = POSTagger()
    pos_tagger.train(corpus)
    return pos_tagger


@pytest.fixture
def corpus_files(tmp_path):
    words = tmp_path / "train-words.txt"
    tags = tmp_path / "train-tags.txt"
    words.write_text("\n".join(TRAIN_WORDS) + "\n")
    tags.write_text("\n".join(TRAIN_TAGS) + "\n")
    return words, tags
