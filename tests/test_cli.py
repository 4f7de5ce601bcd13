import json

import pytest

import scanflow.pipeline as pipeline_module
from conftest import FakeRecognizer
from scanflow.cli import collect_images, main


def _records(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


@pytest.fixture
def fake_client(monkeypatch):
    client = FakeRecognizer()
    monkeypatch.setattr(pipeline_module, "RecognitionClient", lambda *args, **kwargs: client)
    return client


def test_collect_images_expands_directories(tmp_path, make_image):
    b = make_image("b.png", size=(10, 10), noise=False)
    a = make_image("a.jpg", size=(10, 10), noise=False)
    (tmp_path / "notes.txt").write_text("x")

    assert collect_images([tmp_path]) == [a, b]
    assert collect_images([tmp_path / "missing.png"]) == []


def test_optimize_command_writes_jsonl(tmp_path, make_image):
    source = make_image("photo.png", size=(800, 600))
    out = tmp_path / "results" / "optimize.jsonl"

    code = main(["optimize", str(source), "--max-width", "400", "--max-height", "400",
                 "--out-dir", str(tmp_path / "derived"), "-o", str(out)])

    assert code == 0
    (record,) = _records(out)
    assert record["source"] == str(source)
    assert (record["width"], record["height"]) == (400, 300)
    assert 1 <= record["attempts"] <= 5


def test_log_file_option_reaches_the_file_handler(tmp_path, make_image):
    source = make_image("photo.png", size=(200, 100))
    log_file = tmp_path / "logs" / "scanflow.log"

    code = main(["optimize", str(source), "--out-dir", str(tmp_path / "derived"),
                 "-o", str(tmp_path / "out.jsonl"), "--log-file", str(log_file)])

    assert code == 0
    assert "Optimized photo.png" in log_file.read_text(encoding="utf-8")


def test_thumbnails_command(tmp_path, make_image):
    source = make_image("photo.png", size=(300, 300), noise=False)
    out = tmp_path / "thumbs.jsonl"

    assert main(["thumbnails", str(source), "--out-dir", str(tmp_path / "t"), "-o", str(out)]) == 0
    (record,) = _records(out)
    assert record["low_res"]["width"] == 80
    assert record["high_res"]["height"] == 400


def test_validate_command_fails_for_poor_capture(tmp_path, make_image):
    source = make_image("small.png", size=(100, 100), noise=False)
    out = tmp_path / "validate.jsonl"

    assert main(["validate", str(source), "-o", str(out)]) == 1
    (record,) = _records(out)
    assert record["is_valid"] is False
    assert "Low resolution" in record["issues"]


def test_recognize_command(tmp_path, make_image, fake_client):
    images = [make_image(f"scan{i}.png", size=(20, 20), noise=False) for i in range(3)]
    out = tmp_path / "ocr.jsonl"

    code = main(["recognize", str(tmp_path), "-l", "en", "-w", "2", "-o", str(out)])

    assert code == 0
    records = _records(out)
    assert [r["source"] for r in records] == [str(p) for p in images]
    assert [r["text"] for r in records] == [f"text of scan{i}.png" for i in range(3)]
    assert fake_client.max_in_flight <= 2
    assert fake_client.closed


def test_pages_command_stops_at_failure(tmp_path, make_image, fake_client):
    from scanflow.exceptions import TransportError

    pages_dir = tmp_path / "doc"
    pages_dir.mkdir()
    for i in range(3):
        image = make_image(f"page{i}.png", size=(20, 20), noise=False)
        image.rename(pages_dir / image.name)
    fake_client.errors["page1.png"] = TransportError("AI API error: 500")
    out = tmp_path / "pages.jsonl"

    code = main(["pages", str(pages_dir), "--no-optimize", "-o", str(out)])

    assert code == 1
    records = _records(out)
    assert [r["state"] for r in records] == ["done", "failed", "unprocessed"]
    assert records[0]["text"] == "text of page0.png"
    assert records[1]["error"] == "AI API error: 500"


def test_invalid_language_is_reported(tmp_path, make_image, fake_client):
    source = make_image("a.png", size=(10, 10), noise=False)
    assert main(["recognize", str(source), "-l", "xx"]) == 2


def test_no_command_prints_help(capsys):
    assert main([]) == 2
    assert "scanflow" in capsys.readouterr().out
