from io import BytesIO

import pytest
from PIL import Image

from image_optimizer import main, process_directory
from conftest import encode_image, noise_image


@pytest.fixture
def image_tree(tmp_path):
    src = tmp_path / "in"
    (src / "nested").mkdir(parents=True)
    (src / "photo.jpg").write_bytes(encode_image(noise_image(200, 200), "JPEG", quality=95))
    (src / "nested" / "shot.png").write_bytes(encode_image(noise_image(120, 120, seed=4), "PNG"))
    (src / "anim.gif").write_bytes(encode_image(noise_image(20, 20).convert("P"), "GIF"))
    (src / "readme.txt").write_text("not an image")
    return src


def test_process_directory_mirrors_tree(image_tree, tmp_path, capsys):
    out = tmp_path / "out"
    results = process_directory(str(image_tree), str(out), size_ceiling=20_000, workers=2)

    assert set(results) == {"photo.jpg", "anim.gif", "nested/shot.png"}
    assert results["photo.jpg"].success
    assert results["nested/shot.png"].success
    assert not results["anim.gif"].success

    assert (out / "photo.jpg").stat().st_size < (image_tree / "photo.jpg").stat().st_size
    assert (out / "anim.gif").read_bytes() == (image_tree / "anim.gif").read_bytes()
    assert (out / "nested" / "shot.png").exists()
    assert not (out / "readme.txt").exists()

    printed = capsys.readouterr().out
    assert "Files processed: 3" in printed
    assert "Files reduced: 2" in printed


def test_conversion_renames_outputs(image_tree, tmp_path):
    out = tmp_path / "out"
    process_directory(str(image_tree), str(out), size_ceiling=20_000, convert_to_webp=True)

    assert (out / "photo.webp").exists()
    assert (out / "nested" / "shot.webp").exists()
    assert (out / "anim.gif").exists()
    with Image.open(BytesIO((out / "photo.webp").read_bytes())) as img:
        assert img.format == "WEBP"


def test_empty_directory_reports_nothing(tmp_path, capsys):
    (tmp_path / "in").mkdir()
    assert process_directory(str(tmp_path / "in"), str(tmp_path / "out")) == {}
    assert "No images were processed." in capsys.readouterr().out


def test_main_runs_end_to_end(image_tree, tmp_path, capsys):
    out = tmp_path / "out"
    main([str(image_tree), str(out), "--max-size", "20000", "--extensions", ".jpg"])

    assert (out / "photo.jpg").exists()
    assert not (out / "anim.gif").exists()
    assert "ADAPTIVE IMAGE OPTIMIZER" in capsys.readouterr().out


@pytest.mark.parametrize("extra", [["--max-size", "0"], ["--workers", "0"]])
def test_main_rejects_bad_numbers(image_tree, tmp_path, extra):
    with pytest.raises(SystemExit) as exc:
        main([str(image_tree), str(tmp_path / "out")] + extra)
    assert exc.value.code == 1


def test_main_requires_existing_input(tmp_path):
    with pytest.raises(SystemExit) as exc:
        main([str(tmp_path / "missing"), str(tmp_path / "out")])
    assert exc.value.code == 1
