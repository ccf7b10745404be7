"""
Unit Tests - Settings
"""
import pytest
from pydantic import ValidationError

from booking_cdc.config.settings import PipelineSettings


class TestPipelineSettings:
    """Tests for PipelineSettings validation"""

    def test_reorder_window_may_be_zero(self):
        assert PipelineSettings(reorder_window=0).reorder_window == 0

    def test_negative_reorder_window_is_rejected(self):
        with pytest.raises(ValidationError):
            PipelineSettings(reorder_window=-1)

    def test_negative_reorder_window_from_environment(self, monkeypatch):
        monkeypatch.setenv("PIPELINE_REORDER_WINDOW", "-5")

        with pytest.raises(ValidationError):
            PipelineSettings()

    @pytest.mark.parametrize("field", ["derivation_batch_size", "derivation_workers", "export_chunk_size"])
    def test_sizes_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            PipelineSettings(**{field: 0})
