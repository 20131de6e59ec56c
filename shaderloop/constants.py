"""Default values shared across shaderloop."""

DEFAULT_MAX_ITERATIONS = 3
DEFAULT_TARGET_SCORE = 80.0

# Seconds of simulated animation time sampled by a capture.
DEFAULT_TIME_VALUES = [0.1, 0.2, 0.5, 0.8, 1.2, 1.5, 3.0, 5.0, 10.0]
DEFAULT_CAPTURE_WIDTH = 1280
DEFAULT_CAPTURE_HEIGHT = 720

# Bounded wait used when screenshots arrive before the code step has finished.
CODE_WAIT_ATTEMPTS = 10
CODE_WAIT_DELAY = 0.5

# Consecutive fixes allowed before a shader that keeps failing to compile is given up on.
MAX_FIX_ATTEMPTS = 3

DEFAULT_COLLABORATOR_TIMEOUT = 120.0
DEFAULT_CAPTURE_TIMEOUT = 60.0

DEFAULT_MODEL = "openai:gpt-4.1"
