import json

import pytest

from usdrealize.cli import parse_args


def test_parse_args_joins_path_tokens():
    args = parse_args(["--input", "My", "Scenes/robot.usda", "--time", "4", "--texture-workers", "0", "-v"])
    assert args.input_path == "My Scenes/robot.usda"
    assert args.time == 4.0
    assert args.texture_workers == 0
    assert args.verbose
    assert args.config_path is None
    assert args.play_seconds is None
    assert not args.wait_textures


def test_parse_args_requires_input():
    with pytest.raises(SystemExit):
        parse_args([])


def test_main_reports_missing_stage(tmp_path, capsys):
    pytest.importorskip("pxr")
    from usdrealize.main import main

    with pytest.raises(SystemExit) as excinfo:
        main(["--input", str(tmp_path / "missing.usda")])
    assert excinfo.value.code == 2
    assert "Error:" in capsys.readouterr().err


def test_main_writes_summary(tmp_path):
    pytest.importorskip("pxr")
    from usdrealize.main import main

    stage_path = tmp_path / "box.usda"
    stage_path.write_text(
        "#usda 1.0\n"
        "(\n    upAxis = \"Y\"\n)\n\n"
        "def Xform \"World\"\n{\n"
        "    def Cube \"Box\"\n    {\n        double size = 2\n    }\n"
        "}\n",
        encoding="utf-8",
    )
    summary_path = tmp_path / "out" / "summary.json"
    result = main(["--input", str(stage_path), "--texture-workers", "0", "--summary-json", str(summary_path)])
    assert result.stats.meshes == 1
    summary = json.loads(summary_path.read_text(encoding="utf-8"))
    assert summary["stats"]["meshes"] == 1
