

import json
import shutil
from pathlib import Path

from flask import Flask

from blog import get_static_paths
from server import BASE_DIR, FALLBACK_MODES, create_app

OUTPUT = BASE_DIR / "_site"


def _clear(output: Path):
    if not output.exists():
        return
    for item in output.iterdir():
        if item.name == ".git":
            continue
        if item.is_dir():
            shutil.rmtree(item)
        else:
            item.unlink()


def _fetch(client, url: str) -> bytes:
    resp = client.get(url)
    if resp.status_code != 200:
        raise RuntimeError(f"{url} returned {resp.status_code}")
    return resp.data


def build(app: Flask = None, output: Path = None) -> list:
    """Pre-render the blog listing and every enumerated post into ``output``."""
    app = app or create_app()
    output = Path(output or OUTPUT)
    print(f"Building static blog into {output} ...")

    _clear(output)
    output.mkdir(parents=True, exist_ok=True)
    written = []

    fallback = FALLBACK_MODES[str(app.config["KNOWN"]["blog_fallback"]).lower()]
    static = get_static_paths(app.extensions["known.blog"], fallback)
    slugs = [p["params"]["slug"] for p in static["paths"]]

    client = app.test_client()

    index_path = output / "blog" / "index.html"
    index_path.parent.mkdir(parents=True, exist_ok=True)
    index_path.write_bytes(_fetch(client, "/blog"))
    written.append(index_path)
    print("  blog/index.html")

    rendered = 0
    for slug in slugs:
        # a front-matter slug that differs from its file name only resolves through the CMS
        resp = client.get(f"/blog/{slug}")
        if resp.status_code == 404:
            print(f"  skipping {slug}: no post resolves for this slug")
            continue
        if resp.status_code != 200:
            raise RuntimeError(f"/blog/{slug} returned {resp.status_code}")

        page = output / "blog" / slug / "index.html"
        page.parent.mkdir(parents=True, exist_ok=True)
        page.write_bytes(resp.data)

        data = output / "data" / "posts" / f"{slug}.json"
        data.parent.mkdir(parents=True, exist_ok=True)
        data.write_bytes(_fetch(client, f"/api/blog/{slug}"))
        written.extend([page, data])
        rendered += 1
    print(f"  {rendered} posts rendered")

    paths_file = output / "paths.json"
    paths_file.write_text(json.dumps(static), encoding="utf-8")
    written.append(paths_file)

    (output / ".nojekyll").write_text("", encoding="utf-8")

    print(f"\nDone! Static blog is in: {output}")
    print("To test locally:  cd _site && python3 -m http.server 8080")
    return written


if __name__ == "__main__":
    build()
