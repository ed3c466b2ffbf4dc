from codex_gateway.config import ProxySettings
from codex_gateway.debug import make_debugger


def test_disabled_by_default():
    assert make_debugger(ProxySettings(), {}, {}) is None


def test_query_enables_and_header_overrides():
    settings = ProxySettings()
    assert make_debugger(settings, {"debug_sse": "1"}, {}) is not None
    assert make_debugger(settings, {"debug_sse": "1"}, {"x-debug-sse": "off"}) is None


def test_writes_timestamped_lines_to_file(tmp_path):
    path = tmp_path / "sse.log"
    writer = make_debugger(ProxySettings(debug_sse_enabled=True, debug_sse_path=str(path)), {}, {})
    writer("raw: data: {}")
    line = path.read_text().strip()
    assert line.endswith("UTC] raw: data: {}")
