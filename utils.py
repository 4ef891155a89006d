from constants import *
from errors import UnknownStateError
import pandas as pd
import numpy as np
import seaborn as sn
import matplotlib.pyplot as plt

import matplotlib.colors as mcolors


def infer_sentences(model, sentences, start):
    """
    Args:
        model (POSTagger): trained model used for inference
        sentences (list[list[str]]): list of sentences to infer by single process
        start (int): index of first sentence in sentences in the original list of sentences

    Returns:
        dict: index, predicted tags for each sentence in sentences (None if decoding failed)
    """
    res = {}
    for i in range(len(sentences)):
        try:
            res[start + i] = model.inference(sentences[i])
        except UnknownStateError:
            res[start + i] = None
    return res


def compute_prob(model, sentences, tags, start):
    """

    Args:
        model (POSTagger): model used for scoring
        sentences (list[list[str]]): list of sentences
        tags (list[list[str]]): list of tag sequences, one per sentence
        start (int): index of first sentence in sentences in the original list of sentences

    Returns:
        dict: index, log score for each sentence,tag pair
    """
    res = {}
    for i in range(len(sentences)):
        res[start + i] = model.sequence_probability(sentences[i], tags[i])
    return res


def chunk_starts(n, processes):
    """Start offsets splitting n items into at most `processes` contiguous chunks."""
    k = max(1, -(-n // max(1, processes)))
    return k, list(range(0, n, k))


def read_lines(filename):
    """Reads a whitespace tokenized, one-sentence-per-line file.

    The file is closed on every exit path, including a read error.
    """
    with open(filename) as f:
        return [line.split() for line in f]


def load_data(sentence_file, tag_file=None):
    """Loads data from two line aligned files: one containing sentences and one containing tags.

    tag_file is optional, so this function can be used to load unlabeled data.
    Alignment is not checked here; training and evaluation report mismatches themselves.
    """
    sentences = read_lines(sentence_file)
    if tag_file:
        tags = read_lines(tag_file)
        return sentences, tags

    return sentences


def write_predictions(path, sentences, predictions):
    """Writes one row per token (sentence id, word, predicted tag) as csv.

    Sentences that failed to decode are written with an empty tag.
    """
    rows = []
    for i in range(len(sentences)):
        pred = predictions[i]
        for j, word in enumerate(sentences[i]):
            rows.append((i, word, pred[j] if pred is not None else ''))

    df = pd.DataFrame(rows, columns=['sentence', 'word', 'tag'])
    df.to_csv(path, index=False)
    return df


def confusion_matrix(pred, gt, fname, name, threshold=CONFUSION_THRESHOLD):
    """Saves the confusion matrix

    Args:
        pred (list[list[str] | None]): list of predicted tags, None for failed sentences
        gt (list[list[str]]): list of gold tags
        fname (str): filename to save confusion matrix
        name (str): plot title
        threshold (int): a tag is plotted only if one of its off-diagonal counts exceeds this

    Returns:
        pandas.DataFrame: the full (unfiltered) matrix, gold tags as rows
    """
    flat_pred = []
    flat_y = []
    for p, true in zip(pred, gt):
        if p is None:
            continue
        flat_pred.extend(p)
        flat_y.extend(true)

    all_tags = sorted(set(flat_pred) | set(flat_y))
    if not all_tags:
        raise ValueError("No decoded tokens to plot")
    tag2idx = {all_tags[i]: i for i in range(len(all_tags))}
    matrix = np.zeros((len(tag2idx), len(tag2idx)))
    for i in range(len(flat_pred)):
        matrix[tag2idx[flat_y[i]]][tag2idx[flat_pred[i]]] += 1
    full = pd.DataFrame(matrix.copy(), index=all_tags, columns=all_tags)

    # Save the diagonal values and set them to 0
    diag_values = np.diag(matrix).copy()
    np.fill_diagonal(matrix, 0)

    # Filter the matrix based on the threshold, keep everything if nothing passes
    mask = np.any(matrix > threshold, axis=1)
    if not mask.any():
        mask = np.ones(len(all_tags), dtype=bool)
    filtered_matrix = matrix[mask][:, mask]

    # Restore the diagonal values
    np.fill_diagonal(filtered_matrix, diag_values[mask])

    filtered_tags = np.array(all_tags)[mask]
    df_cm = pd.DataFrame(filtered_matrix, index=filtered_tags, columns=filtered_tags)

    size = max(6, len(filtered_tags))
    plt.figure(figsize=(size * 1.5, size))

    colors = ["white", "darkred"]
    cmap = mcolors.LinearSegmentedColormap.from_list("custom_red", colors)

    # Hyphen for zeros
    annot_array = np.array(df_cm.astype(int).astype(str))
    annot_array[annot_array == '0'] = '-'

    sn.heatmap(df_cm, annot=annot_array, cmap=cmap, fmt='')

    plt.title(name)
    plt.xlabel('Predicted')
    plt.ylabel('True')
    plt.savefig(fname)
    plt.close()

    return full
