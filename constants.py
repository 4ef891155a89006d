### Start of sentence tag ###
START = '<START>'

### Log score for an unseen (word, tag) pair ###
UNSEEN_PENALTY = -50.0

### Case folding for lookups
LOWERCASE = True

### Evaluation ###
PROCESSES = 12
TOP_MISCLASSIFIED = 5; MISCLASSIFIED_SAMPLES = 10

### Confusion matrix
CONFUSION_THRESHOLD = 0
