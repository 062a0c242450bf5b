import logging
import sys
from pathlib import Path

import pytest

# The tools live as flat modules under bin/
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root / "bin"))

from helm_render import RenderResult  # noqa: E402

CHART_YAML = "apiVersion: v2\nname: {name}\nversion: 0.1.0\n"


@pytest.fixture
def make_chart(tmp_path):
    """Build a chart directory from {relative template path: content}."""

    def _make(templates, name="demo", values=""):
        chart = tmp_path / name
        (chart / "templates").mkdir(parents=True)
        (chart / "Chart.yaml").write_text(CHART_YAML.format(name=name))
        (chart / "values.yaml").write_text(values)
        for rel_path, content in templates.items():
            path = chart / "templates" / rel_path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        return chart

    return _make


@pytest.fixture
def fake_renderer():
    """Renderer stand-in returning canned output keyed by values file name."""

    def _make(outputs, failures=None):
        failures = failures or {}
        calls = []

        def render(chart_dir, values_file):
            key = Path(values_file).name if values_file is not None else None
            calls.append((Path(chart_dir), key))
            if key in failures:
                return RenderResult(stdout="", stderr=failures[key], returncode=1)
            return RenderResult(stdout=outputs.get(key, ""), stderr="", returncode=0)

        render.calls = calls
        return render

    return _make


@pytest.fixture(autouse=True)
def restore_root_logging():
    """main() reconfigures the root logger; put it back after every test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
