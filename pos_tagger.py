from multiprocessing import Pool
import time
from utils import *
from errors import FormatMismatchError, UnknownStateError
from tqdm import tqdm
from collections import defaultdict
from dataclasses import dataclass
from itertools import zip_longest
from types import MappingProxyType
from typing import Optional
import sys
import argparse


def _tokens(line):
    return line.split() if isinstance(line, str) else list(line)


def _fold(word):
    return word.lower() if LOWERCASE else word


def _freeze(table):
    return MappingProxyType({k: MappingProxyType(dict(v)) for k, v in table.items()})


def _thaw(table):
    return {k: dict(v) for k, v in table.items()}


@dataclass(frozen=True)
class HMMModel:
    """Trained bigram HMM.

    transitions: tag -> {next tag -> log P(next tag | tag)}
    emissions: word -> {tag -> log P(word | tag)}

    Both tables are read-only views, so one model can be shared between
    any number of decoders.
    """
    transitions: MappingProxyType
    emissions: MappingProxyType

    def __post_init__(self):
        object.__setattr__(self, 'transitions', _freeze(self.transitions))
        object.__setattr__(self, 'emissions', _freeze(self.emissions))

    def __reduce__(self):
        # mappingproxy can't be pickled, Pool workers get plain dicts and refreeze
        return (HMMModel, (_thaw(self.transitions), _thaw(self.emissions)))

    @property
    def tags(self):
        return sorted(t for t in self.transitions if t != START)

    def knows(self, word):
        return _fold(word) in self.emissions


@dataclass
class TrainingResult:
    """Outcome of training.

    When `fault` is set, `model` was built from the `ingested` pairs that
    preceded the mismatch and it is up to the caller whether to use it.
    """
    model: HMMModel
    ingested: int
    fault: Optional[FormatMismatchError] = None

    @property
    def ok(self):
        return self.fault is None

    def unwrap(self, allow_partial=False):
        if self.fault is not None and not allow_partial:
            raise self.fault
        return self.model


def train(tag_sequences, word_sequences):
    """Estimates transition and emission log probabilities.

    Args:
        tag_sequences (list[list[str] | str]): tags, one sequence (or line) per sentence
        word_sequences (list[list[str] | str]): words aligned with tag_sequences

    Returns:
        TrainingResult: the model, plus the format fault that stopped ingestion if any
    """
    # Pass 1: tag totals, which are the denominators of every probability.
    # Only pairs before the first mismatch are counted.
    tag_count = defaultdict(int)
    pairs = []
    fault = None
    for i, (tags, words) in enumerate(zip_longest(tag_sequences, word_sequences)):
        if tags is None or words is None:
            fault = FormatMismatchError(i,
                                        None if tags is None else len(_tokens(tags)),
                                        None if words is None else len(_tokens(words)))
            break
        tags, words = _tokens(tags), _tokens(words)
        if len(tags) != len(words):
            fault = FormatMismatchError(i, len(tags), len(words))
            break
        if not tags:
            continue
        if START in tags:
            raise ValueError(f"line {i}: {START!r} is reserved and can't be used as a tag")

        tag_count[START] += 1
        for tag in tags:
            tag_count[tag] += 1
        pairs.append((tags, words))

    # Pass 2: transition and emission counts
    transitions = {}
    emissions = {}
    for tags, words in pairs:
        prev = START
        for tag, word in zip(tags, words):
            transitions.setdefault(tag, {})
            row = transitions.setdefault(prev, {})
            row[tag] = row.get(tag, 0) + 1

            obs = emissions.setdefault(_fold(word), {})
            obs[tag] = obs.get(tag, 0) + 1
            prev = tag

    # Convert counts to log probabilities
    for tag, row in transitions.items():
        nexts = list(row)
        counts = np.array([row[n] for n in nexts], dtype=np.float64)
        transitions[tag] = dict(zip(nexts, np.log(counts / tag_count[tag]).tolist()))

    for word, row in emissions.items():
        word_tags = list(row)
        counts = np.array([row[t] for t in word_tags], dtype=np.float64)
        totals = np.array([tag_count[t] for t in word_tags], dtype=np.float64)
        emissions[word] = dict(zip(word_tags, np.log(counts / totals).tolist()))

    return TrainingResult(HMMModel(transitions, emissions), len(pairs), fault)


def viterbi(sentence, model):
    """Most likely tag sequence for a sentence.

    Tags are visited in lexicographic order and a score only replaces an
    existing one when strictly greater, so ties go to the smallest tag name.

    Args:
        sentence (str | list[str]): whitespace separated sentence or its tokens
        model (HMMModel): trained model

    Returns:
        list[str]: one tag per token

    Raises:
        UnknownStateError: a reachable tag is missing from the model, or no
            tag at some position has anything recorded after it
    """
    words = _tokens(sentence)
    if not words:
        return []

    curr_scores = {START: 0.0}
    backtrace = []

    for i, word in enumerate(words):
        observed = model.emissions.get(_fold(word), {})
        next_scores = {}
        pointers = {}
        for curr in sorted(curr_scores):
            if curr not in model.transitions:
                raise UnknownStateError(curr, i)

            # tags only seen at sentence ends have an empty row and add nothing
            outgoing = model.transitions[curr]
            for nxt in sorted(outgoing):
                score = curr_scores[curr] + outgoing[nxt] + observed.get(nxt, UNSEEN_PENALTY)
                if nxt not in next_scores or score > next_scores[nxt]:
                    next_scores[nxt] = score
                    pointers[nxt] = curr

        # every path ended in a tag that was never followed by anything
        if not next_scores:
            raise UnknownStateError(max(sorted(curr_scores), key=curr_scores.get), i)

        backtrace.append(pointers)
        curr_scores = next_scores

    best = None
    for tag in sorted(curr_scores):
        if best is None or curr_scores[tag] > curr_scores[best]:
            best = tag

    result_tags = [None] * len(words)
    for i in range(len(words) - 1, -1, -1):
        result_tags[i] = best
        best = backtrace[i][best]
    return result_tags


def sequence_score(model, sentence, tags):
    """Log score of a given tag path, -inf if it uses an unseen transition."""
    words, tags = _tokens(sentence), _tokens(tags)
    if len(words) != len(tags):
        raise FormatMismatchError(0, len(tags), len(words))

    log_prob = 0.0
    prev = START
    for word, tag in zip(words, tags):
        transition = model.transitions.get(prev, {}).get(tag)
        if transition is None:
            return -np.inf
        log_prob += transition + model.emissions.get(_fold(word), {}).get(tag, UNSEEN_PENALTY)
        prev = tag
    return log_prob


class POSTagger():
    def __init__(self):
        """Starts untrained; decoding anything non-empty raises UnknownStateError."""
        self.model = HMMModel({}, {})

    def train(self, data, allow_partial=True):
        """Trains the model from (sentences, tags).

        With allow_partial=False a format fault raises and the previous model is kept.
        """
        sentences, tags = data
        result = train(tags, sentences)
        self.model = result.unwrap(allow_partial)
        return result

    def inference(self, sequence):
        return viterbi(sequence, self.model)

    def sequence_probability(self, sequence, tags):
        return sequence_score(self.model, sequence, tags)


@dataclass
class EvaluationResult:
    correct: int
    total: int
    failed: int
    predictions: list

    @property
    def accuracy(self):
        return self.correct / self.total if self.total else 0.0


def check_alignment(sentences, tags):
    for i, (s, t) in enumerate(zip_longest(sentences, tags)):
        if s is None or t is None or len(s) != len(t):
            raise FormatMismatchError(i,
                                      None if t is None else len(t),
                                      None if s is None else len(s))


def display_misclassifications(sentences, tags, predictions):
    n = len(sentences)

    # Count misclassifications per gold tag, keeping a few samples
    misclassified_dict = defaultdict(lambda: {'count': 0, 'samples': []})

    # Failed sentences have no prediction to compare
    for i in range(n):
        if predictions[i] is None:
            continue
        for j in range(len(sentences[i])):
            true_tag = tags[i][j]
            predicted_tag = predictions[i][j]
            if true_tag != predicted_tag:
                misclassified_dict[true_tag]['count'] += 1
                if len(misclassified_dict[true_tag]['samples']) < MISCLASSIFIED_SAMPLES:
                    misclassified_dict[true_tag]['samples'].append((sentences[i][j], predicted_tag))

    # Total number of misclassified tokens
    total_misclassified_tokens = sum(misclassified_dict[tag]['count'] for tag in misclassified_dict)
    if not total_misclassified_tokens:
        print("No misclassified tokens.")
        return

    # Most misclassified first, ties by tag name
    sorted_misclassified_tags = sorted(misclassified_dict.keys(),
                                       key=lambda x: (-misclassified_dict[x]['count'], x))

    # Display the top misclassified tags with samples
    for tag in sorted_misclassified_tags[:TOP_MISCLASSIFIED]:
        percentage_misclassified = (misclassified_dict[tag]['count'] / total_misclassified_tokens) * 100
        print(f"True Tag: {tag}")
        print(f"Number of Misclassifications: {misclassified_dict[tag]['count']} ({percentage_misclassified:.2f}%)")
        print("Sample Tokens and Their Predicted Tags:")
        for sample in misclassified_dict[tag]['samples']:
            print(f"Token: {sample[0]}, Predicted Tag: {sample[1]}")
        print("------")


def predict(model, sentences, processes=PROCESSES, verbose=False):
    """Decodes every sentence, in a process pool when processes > 1.

    Returns:
        list: tags per sentence, None where decoding failed
    """
    n = len(sentences)
    predictions = {}
    if processes > 1 and n > 1:
        k, starts = chunk_starts(n, processes)
        with Pool(processes=processes) as pool:
            res = [pool.apply_async(infer_sentences, [model, sentences[i:i + k], i]) for i in starts]
            ans = [r.get(timeout=None) for r in res]
        for a in ans:
            predictions.update(a)
    else:
        for i in tqdm(range(n), desc="Processing sentences", disable=not verbose):
            predictions.update(infer_sentences(model, [sentences[i]], i))
    return [predictions[i] for i in range(n)]


def evaluate(data, model, processes=PROCESSES, verbose=True):
    """Evaluates the POS model on some sentences and gold tags.

    Token accuracy is (correct, total) over every token; a sentence that fails
    to decode counts all of its tokens as wrong. With verbose, also prints
    unknown-word accuracy, whole-sentence accuracy, gold vs predicted path
    scores and the most misclassified tags.

    Raises:
        FormatMismatchError: sentences and gold tags are not aligned
    """
    sentences, tags = data
    check_alignment(sentences, tags)
    n = len(sentences)

    start = time.time()
    predictions = predict(model, sentences, processes, verbose)
    if verbose:
        print(f"Inference Runtime: {(time.time()-start)/60} minutes.")

    correct = 0
    total = 0
    failed = 0
    for i in range(n):
        total += len(tags[i])
        if predictions[i] is None:
            failed += 1
            continue
        correct += sum(1 for p, t in zip(predictions[i], tags[i]) if p == t)

    result = EvaluationResult(correct, total, failed, predictions)
    if verbose:
        report(sentences, tags, model, result)
    return result


def report(sentences, tags, pos_tagger, result):
    predictions = result.predictions
    n = len(sentences)
    decoded = [i for i in range(n) if predictions[i] is not None]

    unk = [(tags[i][j], predictions[i][j]) for i in decoded
           for j in range(len(sentences[i])) if not pos_tagger.model.knows(sentences[i][j])]
    whole_sent = [predictions[i] == tags[i] for i in decoded if sentences[i]]

    print("Token acc: {}".format(result.accuracy))
    if unk:
        print("Unk token acc: {}".format(sum(1 for t, p in unk if t == p) / len(unk)))
    if whole_sent:
        print("Whole sent acc: {}".format(sum(whole_sent) / len(whole_sent)))
    if result.failed:
        print(f"Sentences that failed to decode: {result.failed}")
    print("------------")

    if decoded:
        probabilities_pred = compute_prob(pos_tagger, [sentences[i] for i in decoded], [predictions[i] for i in decoded], 0)
        probabilities_gold = compute_prob(pos_tagger, [sentences[i] for i in decoded], [tags[i] for i in decoded], 0)
        m = len(decoded)
        count_sub_optimal = sum(1 for i in range(m) if probabilities_pred[i] < probabilities_gold[i])
        print("Mean Pred Sequence Score: {}".format(sum(probabilities_pred.values()) / m))
        print("Mean Gold Sequence Score: {}".format(sum(probabilities_gold.values()) / m))
        print(f"Percentage of sub-optimal results: {count_sub_optimal / m * 100:.2f}%")
        print("------------")

    display_misclassifications(sentences, tags, predictions)


def label_sentence(sentence, tags):
    """word(TAG) word(TAG) ... for display; keeps the words' original case."""
    words = _tokens(sentence)
    if tags is None or len(words) != len(tags):
        return "Unable to label!"
    return " ".join(f"{w}({t})" for w, t in zip(words, tags))


def console(pos_tagger, stream=None):
    """Tags sentences typed one per line until EOF or an empty line."""
    stream = stream if stream is not None else sys.stdin
    while True:
        print()
        print("test a sentence>")
        line = stream.readline()
        if not line.strip():
            break
        try:
            tags = pos_tagger.inference(line)
        except UnknownStateError as e:
            print(e, file=sys.stderr)
            tags = None
        print(label_sentence(line, tags))


def main(argv=None):
    parser = argparse.ArgumentParser(description="HMM POS Tagger Training, Evaluation and Tagging")
    parser.add_argument("train_words", help="Training sentences, one whitespace tokenized sentence per line")
    parser.add_argument("train_tags", help="Training tags, aligned line by line with train_words")
    parser.add_argument("--test-words", help="Evaluation sentences")
    parser.add_argument("--test-tags", help="Evaluation tags, aligned with --test-words")
    parser.add_argument("-p", "--processes", type=int, default=PROCESSES,
                        help="Worker processes used for decoding")
    parser.add_argument("--strict", action="store_true",
                        help="Refuse to use a model when the training files are misaligned")
    parser.add_argument("--confusion-matrix", help="Path to save the evaluation confusion matrix plot")
    parser.add_argument("--tag-file", help="Unlabeled sentences to tag")
    parser.add_argument("-o", "--output", default="predictions.csv",
                        help="Where to write tags for --tag-file")
    parser.add_argument("-i", "--interactive", action="store_true",
                        help="Tag sentences typed on stdin")

    args = parser.parse_args(argv)

    if bool(args.test_words) != bool(args.test_tags):
        parser.error("--test-words and --test-tags must be given together")

    try:
        print("Loading Data......")
        train_data = load_data(args.train_words, args.train_tags)

        print("Training......")
        pos_tagger = POSTagger()
        try:
            result = pos_tagger.train(train_data, allow_partial=not args.strict)
        except FormatMismatchError as e:
            print(f"training files not same format! {e}", file=sys.stderr)
            return 1
        if not result.ok:
            print(f"training files not same format! {result.fault}; "
                  f"model uses the first {result.ingested} sentences", file=sys.stderr)
        print("Done Training")

        if args.test_words:
            print("Evaluating......")
            test_data = load_data(args.test_words, args.test_tags)
            try:
                res = evaluate(test_data, pos_tagger, args.processes)
            except FormatMismatchError as e:
                print(f"test files not same format! {e}", file=sys.stderr)
                return 1
            print(f"{res.correct} parts of speech correct out of {res.total} total.")
            if args.confusion_matrix:
                try:
                    confusion_matrix(res.predictions, test_data[1], args.confusion_matrix,
                                     'Bigram HMM Confusion Matrix')
                    print(f"Confusion matrix saved to {args.confusion_matrix}")
                except ValueError as e:
                    print(e, file=sys.stderr)

        if args.tag_file:
            sentences = load_data(args.tag_file)
            predictions = predict(pos_tagger, sentences, args.processes, verbose=True)
            write_predictions(args.output, sentences, predictions)
            print(f"Tags written to {args.output}")
    except OSError as e:
        print(f"Cannot open file.\n{e}", file=sys.stderr)
        return 1

    if args.interactive:
        console(pos_tagger)
    return 0


if __name__ == "__main__":
    sys.exit(main())
