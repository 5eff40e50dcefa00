"""
Tests for the job configuration loader.
"""

import pytest
import yaml

from batch_kernel.exceptions import ConfigurationError
from batch_engine.config import (
    job_config_from_mapping,
    load_job_config,
    load_job_parameters,
    load_yaml_file,
    parameters_from_mapping,
)
from batch_engine.domain.types import JobParameters


def _write(tmp_path, text: str):
    path = tmp_path / "job.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadJobConfig:
    def test_full_file(self, tmp_path):
        path = _write(tmp_path, """
job: transaction_report
database_url: sqlite:///batch.db
log_level: debug
parameters:
  start_key: 2024-01-01
  end_key: 2024-01-31
  chunk_size: 50
  skip_limit: 5
  output_target: out/report.txt
  commit_timeout_seconds: 30
  fault_tolerant: false
""")
        config = load_job_config(path)

        assert config.job_name == "transaction_report"
        assert config.database_url == "sqlite:///batch.db"
        assert config.log_level == "DEBUG"
        params = config.parameters
        assert params.start_key == "2024-01-01"
        assert params.end_key == "2024-01-31"
        assert params.chunk_size == 50
        assert params.skip_limit == 5
        assert params.output_target == "out/report.txt"
        assert params.commit_timeout_seconds == 30.0
        assert params.fault_tolerant is False
        assert params.page_size == JobParameters().page_size

    def test_parameters_only(self, tmp_path):
        path = _write(tmp_path, "parameters:\n  chunk_size: 7\n")
        assert load_job_parameters(path) == JobParameters(chunk_size=7)

    def test_empty_file_gives_defaults(self, tmp_path):
        path = _write(tmp_path, "")
        config = load_job_config(path)
        assert config.job_name is None
        assert config.parameters == JobParameters()
        assert config.log_level == "INFO"

    def test_list_keys_become_tuples(self, tmp_path):
        path = _write(tmp_path, "parameters:\n  start_key: [G1, 1]\n  end_key: [G1, 9]\n")
        params = load_job_parameters(path)
        assert params.start_key == ("G1", 1)
        assert params.end_key == ("G1", 9)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_job_config(tmp_path / "absent.yaml")

    def test_malformed_yaml(self, tmp_path):
        path = _write(tmp_path, "parameters: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_job_config(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = _write(tmp_path, "- a\n- b\n")
        with pytest.raises(ConfigurationError):
            load_yaml_file(path)


class TestValidation:
    def test_unknown_top_level_key(self):
        with pytest.raises(ConfigurationError) as exc_info:
            job_config_from_mapping({"jobb": "x"})
        assert exc_info.value.field == "jobb"

    def test_unknown_parameter(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parameters_from_mapping({"chunk": 10})
        assert exc_info.value.field == "chunk"

    @pytest.mark.parametrize(
        "data",
        [
            {"chunk_size": "10"},
            {"chunk_size": True},
            {"skip_limit": 1.5},
            {"fault_tolerant": "yes"},
            {"commit_timeout_seconds": "soon"},
            {"output_target": 12},
            {"start_key": {"a": 1}},
        ],
    )
    def test_wrong_types_rejected(self, data):
        with pytest.raises(ConfigurationError):
            parameters_from_mapping(data)

    @pytest.mark.parametrize(
        "data",
        [
            {"chunk_size": 0},
            {"page_size": 0},
            {"max_retry_attempts": -1},
            {"skip_limit": -1},
            {"source_retry_attempts": 0},
            {"commit_timeout_seconds": 0},
            {"batch_window_seconds": 10, "batch_window_warning_seconds": 20},
            {"start_key": 5, "end_key": 1},
        ],
    )
    def test_invalid_values_rejected(self, data):
        with pytest.raises(ConfigurationError):
            parameters_from_mapping(data)

    def test_parameters_must_be_mapping(self):
        with pytest.raises(ConfigurationError):
            job_config_from_mapping({"parameters": [1, 2]})

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            parameters_from_mapping({"chunk_size": -5})

    def test_none_mapping(self):
        assert parameters_from_mapping(None) == JobParameters()
