import os

import pytest

# Keep litellm from fetching its model cost map over the network on import.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")


@pytest.fixture
def char_token_counter():
    """Replace the litellm token counter with the ~4 chars/token estimate."""
    from unittest.mock import patch

    def fake(model, messages):
        return sum(len(str(m.get("content", ""))) for m in messages) // 4

    with patch("turnkeeper.coordinator.history._count_tokens", side_effect=fake) as mocked:
        yield mocked
