"""
Tests for the command line entry point.
"""

import pytest

from core.exceptions import ConfigurationError
from orchestrator.cli import async_main, build_config, create_parser, main, show_order, validate_args


MANIFEST_YAML = """
modules:
  - name: db
    version: 1.0.0
    capabilities: [storage]
    interfaces: [kv-store]
  - name: api
    version: 1.0.0
    dependencies: [db]
    capabilities: [http]
    requires: [kv-store]
  - name: worker
    version: 1.0.0
    dependencies: [api]
    requires: [event-consumer]
"""


@pytest.fixture
def manifest_path(tmp_path):
    path = tmp_path / "modules.yaml"
    path.write_text(MANIFEST_YAML)
    return str(path)


def parse(*argv):
    return create_parser().parse_args(list(argv))


class TestArguments:
    """Tests for argument validation and config layering."""

    def test_show_order_needs_manifest(self):
        assert validate_args(parse("--show-order")) == ["--show-order and --validate-only require --manifest"]

    def test_bad_numbers(self):
        errors = validate_args(parse("--api-port", "70000", "--run-seconds", "0"))
        assert len(errors) == 2

    def test_flags_override_yaml(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ORCH_REGISTRY_CLUSTER_ID", raising=False)
        config_path = tmp_path / "engine.yaml"
        config_path.write_text("registry:\n  cluster_id: alpha\nlogging:\n  level: WARNING\n")

        config = build_config(parse(
            "--config", str(config_path),
            "--env-file", str(tmp_path / "missing.env"),
            "--cluster-id", "beta",
            "--api-port", "8081",
            "--log-format", "json",
        ))

        assert config.registry.cluster_id == "beta"
        assert config.api.port == 8081
        assert config.logging.level == "WARNING"
        assert config.logging.format == "json"

    def test_invalid_layered_config(self, tmp_path):
        config_path = tmp_path / "engine.yaml"
        config_path.write_text("storage:\n  backend: redis\n")
        with pytest.raises(ConfigurationError):
            build_config(parse("--config", str(config_path), "--env-file", str(tmp_path / "missing.env")))


class TestCommands:
    """Tests for --show-order, --validate-only and error exits."""

    def test_show_order(self, manifest_path, capsys):
        show_order(manifest_path)
        out = capsys.readouterr().out

        assert "Startup order (3 modules)" in out
        assert out.index("1. db") < out.index("2. api") < out.index("3. worker")
        assert "<- db" in out

    @pytest.mark.asyncio
    async def test_validate_only_reports_pending_edges(self, manifest_path, tmp_path, capsys):
        args = parse("--manifest", manifest_path, "--validate-only", "--env-file", str(tmp_path / "missing.env"))
        config = build_config(args)

        assert await async_main(args, config) == 0

        out = capsys.readouterr().out
        assert "Manifest OK: 3 modules registered, 1 pending edges" in out
        assert "pending: worker -> interface:event-consumer" in out

    def test_main_rejects_bad_args(self, capsys):
        assert main(["--validate-only"]) == 1
        assert "require --manifest" in capsys.readouterr().err

    def test_main_reports_bad_manifest(self, tmp_path, capsys):
        path = tmp_path / "modules.yaml"
        path.write_text("modules: [\n")
        assert main(["--manifest", str(path), "--show-order", "--env-file", str(tmp_path / "missing.env")]) == 1
        assert "Invalid YAML" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_validate_only_rejects_cyclic_manifest(self, tmp_path, caplog):
        path = tmp_path / "cycle.yaml"
        path.write_text(
            "modules:\n"
            "  - {name: a, version: 1.0.0, dependencies: [b]}\n"
            "  - {name: b, version: 1.0.0, dependencies: [a]}\n"
        )
        args = parse("--manifest", str(path), "--validate-only", "--env-file", str(tmp_path / "missing.env"))
        config = build_config(args)

        with caplog.at_level("ERROR", logger="orchestrator"):
            assert await async_main(args, config) == 1

        assert "Manifest rejected: [HIGH] CyclicDependency" in caplog.text
        assert "cycle_members=['a', 'b']" in caplog.text
