"""Unit tests for configuration, mode selection and the entry point.

Tests cover:
- Settings loading from environment and YAML file (load_settings)
- Value parsing (_parse_bool, _parse_interval)
- Configuration validation (validate_config)
- Mode selection (select_target, validate_etc_hosts_path)
- Command line parsing and main()
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from hairpin_proxy.cli import (
    CoreDNSConfigMapTarget,
    EtcHostsFileTarget,
    Settings,
    StartupError,
    TargetMode,
    _parse_bool,
    _parse_interval,
    load_config_file,
    load_settings,
    main,
    parse_args,
    select_target,
    validate_config,
    validate_etc_hosts_path,
)

NO_FILE = {"HAIRPIN_CONFIG_PATH": "/nonexistent/hairpin-proxy.yaml"}

# =============================================================================
# Settings Loading
# =============================================================================


def test_load_settings_defaults() -> None:
    settings = load_settings(dict(NO_FILE))

    assert settings == Settings()
    assert settings.service_name == "hairpin-proxy"
    assert settings.namespace == "hairpin-proxy"
    assert settings.poll_interval == 15
    assert settings.kube_token_ttl == 600
    assert settings.ingress_api_version == "networking.k8s.io/v1"
    assert settings.ingress_hosts_source == "spec.tls.hosts"
    assert settings.ingress_class_name == ""
    assert settings.in_cluster is True
    assert settings.sync_mode == "watch"


def test_load_settings_from_environment() -> None:
    environ = {
        **NO_FILE,
        "SERVICE_NAME": "proxy",
        "KUBE_NAMESPACE": "ingress",
        "POLL_INTERVAL": "30",
        "KUBE_TOKEN_TTL": "120",
        "INGRESS_API_VERSION": "extensions/v1beta1",
        "INGRESS_HOSTS_SOURCE": "spec.rules.host",
        "INGRESS_CLASS_NAME": "nginx",
        "IN_CLUSTER": "false",
        "SYNC_MODE": "Once",
    }

    settings = load_settings(environ)

    assert settings.service_name == "proxy"
    assert settings.namespace == "ingress"
    assert settings.poll_interval == 30
    assert settings.kube_token_ttl == 120
    assert settings.ingress_api_version == "extensions/v1beta1"
    assert settings.ingress_hosts_source == "spec.rules.host"
    assert settings.ingress_class_name == "nginx"
    assert settings.in_cluster is False
    assert settings.sync_mode == "once"
    assert settings.dns_rewrite_destination == "proxy.ingress.svc.cluster.local"


def test_load_settings_clamps_intervals_to_one_second() -> None:
    settings = load_settings({**NO_FILE, "POLL_INTERVAL": "0", "KUBE_TOKEN_TTL": "-5"})

    assert settings.poll_interval == 1
    assert settings.kube_token_ttl == 1


def test_load_settings_invalid_interval_uses_default(caplog) -> None:
    settings = load_settings({**NO_FILE, "POLL_INTERVAL": "soon"})

    assert settings.poll_interval == 15
    assert "Invalid value for POLL_INTERVAL" in caplog.text


def test_load_settings_from_yaml_file(tmp_path: Path) -> None:
    config_file = tmp_path / "hairpin-proxy.yaml"
    config_file.write_text(
        """
service_name: proxy
namespace: edge
poll_interval: 45
ingress_class_name: nginx
in_cluster: false
"""
    )

    settings = load_settings({"HAIRPIN_CONFIG_PATH": str(config_file)})

    assert settings.service_name == "proxy"
    assert settings.namespace == "edge"
    assert settings.poll_interval == 45
    assert settings.ingress_class_name == "nginx"
    assert settings.in_cluster is False
    assert settings.kube_token_ttl == 600


def test_environment_overrides_yaml_file(tmp_path: Path) -> None:
    config_file = tmp_path / "hairpin-proxy.yaml"
    config_file.write_text("service_name: from-file\npoll_interval: 45\n")

    settings = load_settings(
        {"HAIRPIN_CONFIG_PATH": str(config_file), "SERVICE_NAME": "from-env"}
    )

    assert settings.service_name == "from-env"
    assert settings.poll_interval == 45


def test_empty_environment_value_overrides_file(tmp_path: Path) -> None:
    """An explicitly empty INGRESS_CLASS_NAME disables a filter set in the file."""
    config_file = tmp_path / "hairpin-proxy.yaml"
    config_file.write_text("ingress_class_name: nginx\n")

    settings = load_settings({"HAIRPIN_CONFIG_PATH": str(config_file), "INGRESS_CLASS_NAME": ""})

    assert settings.ingress_class_name == ""


def test_load_config_file_missing_returns_empty() -> None:
    assert load_config_file("/nonexistent/hairpin-proxy.yaml") == {}
    assert load_config_file("") == {}


def test_load_config_file_invalid_yaml_returns_empty(tmp_path: Path, caplog) -> None:
    config_file = tmp_path / "hairpin-proxy.yaml"
    config_file.write_text("service_name: [unclosed\n")

    assert load_config_file(str(config_file)) == {}
    assert "Failed to load config" in caplog.text


def test_load_config_file_non_mapping_returns_empty(tmp_path: Path) -> None:
    config_file = tmp_path / "hairpin-proxy.yaml"
    config_file.write_text("- just\n- a list\n")

    assert load_config_file(str(config_file)) == {}


def test_load_config_file_empty_returns_empty(tmp_path: Path) -> None:
    config_file = tmp_path / "hairpin-proxy.yaml"
    config_file.write_text("")

    assert load_config_file(str(config_file)) == {}


# =============================================================================
# Value Parsing
# =============================================================================


def test_parse_bool_values() -> None:
    for value in ["1", "true", "TRUE", "yes", "y", "on", " true "]:
        assert _parse_bool(value) is True
    for value in ["0", "false", "no", "off", "maybe"]:
        assert _parse_bool(value) is False
    assert _parse_bool(None, default=False) is False
    assert _parse_bool(True) is True


def test_parse_interval_values() -> None:
    assert _parse_interval("20", 15, "POLL_INTERVAL") == 20
    assert _parse_interval(20, 15, "POLL_INTERVAL") == 20
    assert _parse_interval(None, 15, "POLL_INTERVAL") == 15
    assert _parse_interval("", 15, "POLL_INTERVAL") == 15
    assert _parse_interval("0", 15, "POLL_INTERVAL") == 1


# =============================================================================
# Validation
# =============================================================================


def test_validate_config_accepts_defaults() -> None:
    assert validate_config(Settings()) == []


def test_validate_config_rejects_unknown_sync_mode() -> None:
    errors = validate_config(Settings(sync_mode="sometimes"))

    assert len(errors) == 1
    assert "SYNC_MODE" in errors[0]


def test_validate_config_rejects_empty_service_name() -> None:
    assert validate_config(Settings(service_name="")) != []


def test_validate_config_only_warns_on_unsupported_host_source(caplog) -> None:
    errors = validate_config(Settings(ingress_hosts_source="metadata.name"))

    assert errors == []
    assert "Unsupported INGRESS_HOSTS_SOURCE" in caplog.text


# =============================================================================
# Mode Selection
# =============================================================================


def test_select_target_without_path_is_coredns_mode() -> None:
    target = select_target(None, Settings())

    assert isinstance(target, CoreDNSConfigMapTarget)
    assert target.mode is TargetMode.COREDNS


def test_select_target_with_empty_path_is_coredns_mode() -> None:
    assert select_target("", Settings()).mode is TargetMode.COREDNS


def test_select_target_with_writable_path_is_etc_hosts_mode(tmp_path: Path) -> None:
    hosts_file = tmp_path / "hosts"
    hosts_file.write_text("127.0.0.1\tlocalhost\n")

    target = select_target(str(hosts_file), Settings())

    assert isinstance(target, EtcHostsFileTarget)
    assert target.mode is TargetMode.ETC_HOSTS
    assert target.name == str(hosts_file)


def test_select_target_missing_path_is_fatal(tmp_path: Path) -> None:
    with pytest.raises(StartupError, match="doesn't exist"):
        select_target(str(tmp_path / "missing"), Settings())


def test_validate_etc_hosts_path_unwritable(tmp_path: Path) -> None:
    hosts_file = tmp_path / "hosts"
    hosts_file.write_text("")

    with patch("hairpin_proxy.cli.os.access", return_value=False):
        with pytest.raises(StartupError, match="isn't writable"):
            validate_etc_hosts_path(str(hosts_file))


# =============================================================================
# Command Line and Entry Point
# =============================================================================


def test_parse_args_etc_hosts() -> None:
    assert parse_args(["--etc-hosts", "/host/etc/hosts"]).etc_hosts == "/host/etc/hosts"
    assert parse_args([]).etc_hosts is None


def test_parse_args_rejects_unknown_flags() -> None:
    with pytest.raises(SystemExit):
        parse_args(["--coredns"])


def test_main_exits_on_invalid_etc_hosts_path(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("HAIRPIN_CONFIG_PATH", str(tmp_path / "none.yaml"))

    with pytest.raises(SystemExit) as exc_info:
        main(["--etc-hosts", str(tmp_path / "missing")])

    assert exc_info.value.code == 1


def test_main_exits_on_invalid_configuration(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("HAIRPIN_CONFIG_PATH", str(tmp_path / "none.yaml"))
    monkeypatch.setenv("SYNC_MODE", "sometimes")

    with pytest.raises(SystemExit) as exc_info:
        main([])

    assert exc_info.value.code == 1


def test_main_once_mode_runs_single_cycle(tmp_path: Path, monkeypatch) -> None:
    hosts_file = tmp_path / "hosts"
    hosts_file.write_text("127.0.0.1\tlocalhost\n")
    monkeypatch.setenv("HAIRPIN_CONFIG_PATH", str(tmp_path / "none.yaml"))
    monkeypatch.setenv("SYNC_MODE", "once")

    with patch("hairpin_proxy.cli.HairpinProxyController.sync_once") as mock_sync, patch(
        "hairpin_proxy.cli.HairpinProxyController.run"
    ) as mock_run:
        main(["--etc-hosts", str(hosts_file)])

    mock_sync.assert_called_once_with()
    mock_run.assert_not_called()


def test_main_exits_on_fatal_cycle_error(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("HAIRPIN_CONFIG_PATH", str(tmp_path / "none.yaml"))
    monkeypatch.setenv("SYNC_MODE", "watch")

    with patch(
        "hairpin_proxy.cli.HairpinProxyController.run", side_effect=RuntimeError("boom")
    ):
        with pytest.raises(SystemExit) as exc_info:
            main([])

    assert exc_info.value.code == 1


def test_main_keyboard_interrupt_is_graceful(tmp_path: Path, monkeypatch, caplog) -> None:
    monkeypatch.setenv("HAIRPIN_CONFIG_PATH", str(tmp_path / "none.yaml"))
    monkeypatch.setenv("SYNC_MODE", "watch")

    with patch("hairpin_proxy.cli.HairpinProxyController.run", side_effect=KeyboardInterrupt):
        main([])

    assert "Shutting down gracefully" in caplog.text


def test_main_logs_selected_target_mode(tmp_path: Path, monkeypatch, caplog) -> None:
    hosts_file = tmp_path / "hosts"
    hosts_file.write_text("127.0.0.1\tlocalhost\n")
    monkeypatch.setenv("HAIRPIN_CONFIG_PATH", str(tmp_path / "none.yaml"))
    monkeypatch.setenv("SYNC_MODE", "once")

    with patch("hairpin_proxy.cli.HairpinProxyController.sync_once"):
        main(["--etc-hosts", str(hosts_file)])

    assert f"Target: {hosts_file} (etc-hosts mode)" in caplog.text
