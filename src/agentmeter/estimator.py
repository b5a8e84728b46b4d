import math

# average UTF-8 bytes per token for mixed English prose and code
BYTES_PER_TOKEN = 3.5


def estimate_tokens(
    bytes_observed: "int",
    bytes_per_token: "float" = BYTES_PER_TOKEN,
) -> "int":
    """
    estimates a provisional token count from the content bytes
    seen so far in a cycle. Only meaningful until the upstream
    protocol reports an authoritative count.
    """
    if bytes_per_token <= 0:
        raise ValueError(f"bytes_per_token must be positive, got {bytes_per_token}")
    if bytes_observed < 0:
        raise ValueError(f"bytes_observed must be non-negative, got {bytes_observed}")

    return math.floor(bytes_observed / bytes_per_token)
