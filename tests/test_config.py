"""Tests for LoopClosingConfig."""

from pathlib import Path

import pytest

from loopslam.config import LoopClosingConfig


class TestLoopClosingConfig:
    """Test suite for configuration loading."""

    def test_defaults(self):
        """Test the default thresholds."""
        config = LoopClosingConfig()

        assert config.min_keyframes_since_loop == 10
        assert config.min_consistency == 3
        assert config.min_refined_inliers == 20
        assert config.min_total_matches == 40
        assert config.fuse_search_radius == 4.0
        assert config.fix_scale is True

    def test_from_dict(self):
        """Test overriding a subset of fields."""
        config = LoopClosingConfig.from_dict({"min_consistency": 2, "fix_scale": False})

        assert config.min_consistency == 2
        assert config.fix_scale is False
        assert config.min_total_matches == 40

    def test_from_dict_rejects_unknown_keys(self):
        """Test that typos are reported instead of ignored."""
        with pytest.raises(ValueError, match="min_consistancy"):
            LoopClosingConfig.from_dict({"min_consistancy": 2})

    def test_from_yaml_section(self, tmp_path: Path):
        """Test loading a loop_closing section."""
        path = tmp_path / "config.yaml"
        path.write_text("loop_closing:\n  min_total_matches: 60\n  fix_scale: false\n")

        config = LoopClosingConfig.from_yaml(path)

        assert config.min_total_matches == 60
        assert config.fix_scale is False

    def test_from_yaml_top_level(self, tmp_path: Path):
        """Test loading settings stored at top level."""
        path = tmp_path / "config.yaml"
        path.write_text("global_ba_iterations: 5\n")

        assert LoopClosingConfig.from_yaml(path).global_ba_iterations == 5

    def test_from_yaml_empty_file(self, tmp_path: Path):
        """Test that an empty file yields the defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert LoopClosingConfig.from_yaml(path) == LoopClosingConfig()

    def test_from_yaml_missing_file(self, tmp_path: Path):
        """Test that a missing file is reported."""
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            LoopClosingConfig.from_yaml(tmp_path / "missing.yaml")

    def test_from_yaml_not_a_mapping(self, tmp_path: Path):
        """Test that non-mapping content is rejected."""
        path = tmp_path / "config.yaml"
        path.write_text("- 1\n- 2\n")

        with pytest.raises(ValueError, match="must be a mapping"):
            LoopClosingConfig.from_yaml(path)

    def test_shipped_config_matches_defaults(self):
        """Test that config/loop_closing.yaml documents the defaults."""
        path = Path(__file__).parent.parent / "config" / "loop_closing.yaml"

        assert LoopClosingConfig.from_yaml(path) == LoopClosingConfig()
