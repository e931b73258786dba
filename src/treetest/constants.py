"""Constants for the treetest DSL and runner."""

# Source format
SPACES_PER_INDENT = 4
SEQUENTIAL_LINE = ".."

# Trailing identifier tokens
TODO_IDENTIFIER = "-T"
MANUAL_IDENTIFIER = "-M"
TEXTUAL_IDENTIFIER = "-"
DEBUG_IDENTIFIER = "~"
ONLY_IDENTIFIER = "$"
NON_PARALLEL_IDENTIFIER = "+"
SEQUENTIAL_IDENTIFIER = ".."
EXPECTED_FAIL_IDENTIFIER = "#"
SKIP_IDENTIFIER = "-s"
SKIP_BELOW_IDENTIFIER = ".s"
SKIP_BRANCH_IDENTIFIER = "$s"

IDENTIFIERS = (
    TODO_IDENTIFIER,
    MANUAL_IDENTIFIER,
    TEXTUAL_IDENTIFIER,
    DEBUG_IDENTIFIER,
    ONLY_IDENTIFIER,
    NON_PARALLEL_IDENTIFIER,
    SEQUENTIAL_IDENTIFIER,
    EXPECTED_FAIL_IDENTIFIER,
    SKIP_IDENTIFIER,
    SKIP_BELOW_IDENTIFIER,
    SKIP_BRANCH_IDENTIFIER,
)

# Hook names, canonical (lowercase, single-spaced)
BEFORE_EVERY_BRANCH = "before every branch"
AFTER_EVERY_BRANCH = "after every branch"
BEFORE_EVERY_STEP = "before every step"
AFTER_EVERY_STEP = "after every step"
BEFORE_EVERYTHING = "before everything"
AFTER_EVERYTHING = "after everything"

HOOK_NAMES = (
    BEFORE_EVERY_BRANCH,
    AFTER_EVERY_BRANCH,
    BEFORE_EVERY_STEP,
    AFTER_EVERY_STEP,
    BEFORE_EVERYTHING,
    AFTER_EVERYTHING,
)

# Special variables that tag branches
FREQUENCY_VAR = "frequency"
GROUP_VAR = "group"

# Higher rank runs more often
FREQUENCY_RANKS = {"low": 1, "med": 2, "high": 3}

# Sort position of each frequency; unset sits between high and med
FREQUENCY_SORT_ORDER = {"high": 0, None: 1, "med": 2, "low": 3}

# Leading words ignored when matching a call to its declaration
GHERKIN_PREFIXES = ("given", "when", "then", "and")

# Runner defaults
DEFAULT_MAX_PARALLEL = 5
BRANCH_WAIT_INTERVAL = 0.01  # seconds between next_branch() polls

CONFIG_FILENAME = "treetest.toml"
