class TaggerError(Exception):
    """Base class for tagger failures."""


class FormatMismatchError(TaggerError, ValueError):
    """Aligned tag/word sources disagree in line count or tokens per line.

    Args:
        index (int): index of the offending line pair
        n_tags (int | None): number of tags on that line, None if the tag source ran out
        n_words (int | None): number of words on that line, None if the word source ran out
    """

    def __init__(self, index, n_tags, n_words):
        self.index = index
        self.n_tags = n_tags
        self.n_words = n_words
        if n_tags is None or n_words is None:
            msg = f"line {index}: tag and word sources have a different number of lines"
        else:
            msg = f"line {index}: {n_tags} tags but {n_words} words"
        super().__init__(msg)


class UnknownStateError(TaggerError, KeyError):
    """Decoding reached a tag with no recorded outgoing transitions."""

    def __init__(self, tag, position):
        self.tag = tag
        self.position = position
        super().__init__(tag)

    def __str__(self):
        return f"no transitions recorded out of tag {self.tag!r} (word {self.position})"
