import pytest

from safeshard import reader


@pytest.fixture
def mapping_spy(monkeypatch):
    """Record every MappedFile the shard reader opens."""
    opened = []
    real_open = reader.open_mapped

    def spy(path):
        mapped = real_open(path)
        opened.append(mapped)
        return mapped

    monkeypatch.setattr(reader, "open_mapped", spy)
    return opened
