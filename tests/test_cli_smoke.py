import subprocess
import sys


def test_cli_help() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "mutheatmap", "--help"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert "mutheatmap" in cp.stdout.lower()
    for cmd in ("plot", "extract", "show-config", "make-toy-data"):
        assert cmd in cp.stdout
