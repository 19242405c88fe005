#!/usr/bin/env python3
"""
bulkai.py

Runs every text file of a directory tree through an OpenAI chat completion
and writes the answers to a mirrored output tree.

Two modes:
  - process    prefix + file content + suffix is sent with a generic
               assistant prompt; the answer becomes the output file.
  - translate  (--lang) the content is translated into the target language,
               directory and file names are translated too, and wiki links
               ([[Name]], ![[Name]], [[Name|alias]]) are rewritten to the
               translated file names.

Translated names are cached in data/filename-map-<lang>-<input>.json so a
second run over the same input directory reuses them instead of asking the
model again. Existing output files are skipped unless --force is given.

Usage:
    bulkai -i ./input -o ./output -p prefix.txt -s suffix.txt
    bulkai -i ./docs -o ./docs-es --lang es -g glossary.txt
    bulkai -i ./content -o ./out -H -e .md -x drafts,.obsidian
"""

import re
import sys
import json
import os
import argparse
import requests
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

# ── Defaults ───────────────────────────────────────────────────────────────────

DEFAULT_MODEL = os.environ.get("BULKAI_MODEL", "gpt-4o-mini")
DEFAULT_API_URL = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1")
DEFAULT_EXTENSIONS = ".md,.txt"
DEFAULT_CACHE_DIR = Path("data")
REQUEST_TIMEOUT = 600  # seconds

GENERIC_SYSTEM_PROMPT = "You are a helpful assistant."
FRONT_MATTER_DELIMITER = "---"

UNSAFE_NAME_RE = re.compile(r"[^a-z0-9]", re.IGNORECASE)


# ── Configuration ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Config:
    input_dir: Path
    output_dir: Path
    input_dir_arg: str
    api_key: str
    prefix: str = ""
    suffix: str = ""
    glossary: str = ""
    force: bool = False
    hugo: bool = False
    extensions: tuple = (".md", ".txt")
    excluded: tuple = ()
    lang: Optional[str] = None
    model: str = DEFAULT_MODEL
    api_url: str = DEFAULT_API_URL
    timeout: float = REQUEST_TIMEOUT
    cache_dir: Path = DEFAULT_CACHE_DIR
    use_cache: bool = True
    verbose: bool = False


def split_list(value: Optional[str]) -> tuple:
    """Split a comma-separated option into trimmed, non-empty items."""
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


def read_optional(path: Optional[str]) -> str:
    if not path:
        return ""
    return Path(path).read_text(encoding="utf-8")


def load_config(args: argparse.Namespace, api_key: str) -> Config:
    """
    Build the run configuration. Prefix, suffix and glossary files are read
    here, once; a missing file raises OSError before any work begins.
    """
    return Config(
        input_dir=Path(args.input_dir).resolve(),
        output_dir=Path(args.output_dir).resolve(),
        input_dir_arg=args.input_dir,
        api_key=api_key,
        prefix=read_optional(args.prefix_file),
        suffix=read_optional(args.suffix_file),
        glossary=read_optional(args.glossary_file),
        force=args.force,
        hugo=args.hugo,
        extensions=split_list(args.extensions),
        excluded=split_list(args.excluded),
        lang=args.lang or None,
        model=args.model,
        api_url=args.api_url,
        timeout=args.timeout,
        cache_dir=Path(args.cache_dir),
        use_cache=not args.no_cache,
        verbose=args.verbose,
    )


# ── Filename translation cache ─────────────────────────────────────────────────

def cache_file_for(cache_dir: Path, lang: str, input_dir_arg: str) -> Path:
    """data/filename-map-<lang>-<input dir with non-alphanumerics as '-'>.json"""
    safe = UNSAFE_NAME_RE.sub("-", input_dir_arg).lower()
    return Path(cache_dir) / f"filename-map-{lang}-{safe}.json"


class JsonCacheStore:
    """
    Persists the filename cache as {"files": [{"original", "translated"}]}.
    The layout matches the files written by earlier versions of the tool.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> list[tuple[str, str]]:
        if not self.path.exists():
            return []
        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        try:
            return [(item["original"], item["translated"]) for item in data.get("files", [])]
        except (KeyError, TypeError, AttributeError) as exc:
            raise ValueError(f"Malformed cache file {self.path}: {exc!r}") from exc

    def save(self, entries: Iterable[tuple[str, str]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {"files": [{"original": o, "translated": t} for o, t in entries]}
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)


class FilenameCache:
    """
    Ordered mapping original -> translated name. Recording an existing key
    replaces its value. Every record is written through to the store.
    """

    def __init__(self, store: Optional[JsonCacheStore] = None) -> None:
        self._store = store
        self._entries: dict[str, str] = {}

    def load(self) -> None:
        if self._store is None:
            return
        for original, translated in self._store.load():
            self._entries[original] = translated
        print(f"[cache] Loaded {len(self._entries)} cached filename translations.", flush=True)

    def lookup(self, key: str) -> Optional[str]:
        return self._entries.get(key)

    def record(self, key: str, translated: str) -> None:
        self._entries[key] = translated
        if self._store is not None:
            self._store.save(self._entries.items())

    def items(self) -> list[tuple[str, str]]:
        return list(self._entries.items())

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


# ── Completion API ─────────────────────────────────────────────────────────────

class CompletionError(RuntimeError):
    """The completion API answered without the expected message content."""


class CompletionClient:
    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        api_url: str = DEFAULT_API_URL,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.endpoint = api_url.rstrip("/") + "/chat/completions"
        self.timeout = timeout

    def complete(self, system: str, user: str) -> str:
        """
        Send one system + user message pair and return the reply text.
        HTTP errors propagate as requests exceptions; there is no retry.
        """
        resp = requests.post(
            self.endpoint,
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise CompletionError(f"Unexpected completion response: {data!r}") from exc


# ── Content transformer ────────────────────────────────────────────────────────

def build_translation_prompt(lang: str, glossary: str = "") -> str:
    prompt = "\n".join([
        "You are technical specification translator",
        "Instructions:",
        f"- Translate content from user input to {lang}",
        "- Output only the result contents",
        "- Preserve markdown or wiki formatting",
        '- Preserve symbol "_"',
        "- Return the same content if it is in the target language already",
    ])
    if glossary:
        prompt += f"\n\nGlossary:\n{glossary}"
    return prompt


class ContentTransformer:
    def __init__(self, client: CompletionClient, prefix: str = "", suffix: str = "", glossary: str = "") -> None:
        self.client = client
        self.prefix = prefix
        self.suffix = suffix
        self.glossary = glossary

    def translate(self, content: str, lang: str) -> str:
        return self.client.complete(build_translation_prompt(lang, self.glossary), content)

    def process(self, content: str) -> str:
        return self.client.complete(GENERIC_SYSTEM_PROMPT, f"{self.prefix}{content}{self.suffix}")


# ── Path mapping ───────────────────────────────────────────────────────────────

class PathMapper:
    """
    Maps input-tree files to output-tree paths. With a target language the
    directory segments and the file stem are translated through the cache;
    the extension is kept as-is.
    """

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        lang: Optional[str] = None,
        cache: Optional[FilenameCache] = None,
        translate_name: Optional[Callable[[str], str]] = None,
    ) -> None:
        if lang and (cache is None or translate_name is None):
            raise ValueError("translating names needs a cache and a translate_name function")
        self.input_dir = Path(input_dir).resolve()
        self.output_dir = Path(output_dir).resolve()
        self.lang = lang
        self.cache = cache
        self.translate_name = translate_name

    def relative_path(self, path: Path) -> Path:
        """Strip the output-dir or input-dir prefix from an absolute path."""
        path = Path(path)
        for root in (self.output_dir, self.input_dir):
            try:
                return path.relative_to(root)
            except ValueError:
                continue
        return path

    def output_path(self, src: Path) -> Path:
        rel = self.relative_path(Path(src).resolve())
        if not self.lang:
            return self.output_dir / rel

        parts = [self._translated(part, part) for part in rel.parent.parts]
        name = self._translated(str(Path(src).resolve()), rel.stem)
        return self.output_dir.joinpath(*parts, f"{name}{rel.suffix}")

    def _translated(self, key: str, text: str) -> str:
        cached = self.cache.lookup(key)
        if cached:
            return cached
        translated = self.translate_name(text).strip()
        if not translated:
            raise CompletionError(f"Empty translation for name {text!r}")
        self.cache.record(key, translated)
        return translated


# ── Content post-processing ────────────────────────────────────────────────────

def rewrite_links(content: str, pairs: Iterable[tuple[str, str]]) -> str:
    """
    Point [[Name]], [[Name|...]] and ![[Name]] links at translated file
    names. `pairs` holds cache entries: the original side may be a full
    path or a bare name; only its stem is matched.
    """
    names: dict[str, str] = {}
    for original, translated in pairs:
        original_name = Path(original).stem
        if original_name and translated.strip() and original_name not in names:
            names[original_name] = Path(translated).name
    if not names:
        return content

    # One pass: replaced text is never rescanned.
    alternation = "|".join(re.escape(name) for name in sorted(names, key=len, reverse=True))
    pattern = re.compile(r"(\[\[|!\[\[)(" + alternation + r")(\]\]|\|)")
    return pattern.sub(lambda m: f"{m.group(1)}{names[m.group(2)]}{m.group(3)}", content)


def trim_front_matter(content: str) -> str:
    """Drop anything the model wrote before the front matter block."""
    if content.count(FRONT_MATTER_DELIMITER) >= 2:
        return content[content.index(FRONT_MATTER_DELIMITER):]
    return content


# ── File discovery ─────────────────────────────────────────────────────────────

def is_excluded(path: Path, excluded: Iterable[str]) -> bool:
    text = str(path)
    return any(part in text for part in excluded)


def find_files(
    input_dir: Path,
    extensions: Iterable[str],
    excluded: Iterable[str] = (),
    verbose: bool = False,
) -> list[Path]:
    extensions = set(extensions)
    excluded = tuple(excluded)
    files: list[Path] = []
    for path in sorted(Path(input_dir).rglob("*")):
        if not path.is_file() or path.suffix not in extensions:
            continue
        if is_excluded(path, excluded):
            if verbose:
                print(f"Excluded: {path}", flush=True)
            continue
        files.append(path)
    return files


# ── Pipeline ───────────────────────────────────────────────────────────────────

class FilePipeline:
    """
    Processes files strictly one after another. Any exception aborts the
    run; files already written stay on disk and are skipped next time
    unless force is set.
    """

    def __init__(
        self,
        config: Config,
        mapper: PathMapper,
        transformer: ContentTransformer,
        cache: Optional[FilenameCache] = None,
    ) -> None:
        self.config = config
        self.mapper = mapper
        self.transformer = transformer
        self.cache = cache

    def plan(self, files: Iterable[Path]) -> list[tuple[Path, Path]]:
        """
        Map every file to its output path up front. In translate mode this
        translates all names first, so links can be rewritten in any file
        no matter where its targets sit in the walk.
        """
        return [(src, self.mapper.output_path(src)) for src in files]

    def process_file(self, src: Path, dst: Path) -> bool:
        """Transform one file. Returns False when an existing output was kept."""
        cfg = self.config
        rel = self.mapper.relative_path(dst)

        if not cfg.force and dst.exists():
            if cfg.verbose:
                print(f"File already exists: {dst}", flush=True)
            return False

        dst.parent.mkdir(parents=True, exist_ok=True)
        print(f"{'Translating' if cfg.lang else 'Processing'}: {rel}", end="", flush=True)

        content = src.read_text(encoding="utf-8")

        if cfg.lang:
            if self.cache is not None:
                content = rewrite_links(content, self.cache.items())
            content = self.transformer.translate(content, cfg.lang)
        else:
            content = self.transformer.process(content)

        if cfg.hugo:
            content = trim_front_matter(content)

        dst.write_text(content, encoding="utf-8")
        print(f", saved: {dst}", flush=True)
        return True

    def run(self, files: Iterable[Path]) -> tuple[int, int]:
        tasks = self.plan(files)
        if self.config.verbose:
            print(f"Processing {len(tasks)} files...", flush=True)

        written = skipped = 0
        for src, dst in tasks:
            if self.process_file(src, dst):
                written += 1
            else:
                skipped += 1
        return written, skipped


def build_pipeline(cfg: Config) -> FilePipeline:
    client = CompletionClient(cfg.api_key, cfg.model, cfg.api_url, cfg.timeout)
    transformer = ContentTransformer(client, cfg.prefix, cfg.suffix, cfg.glossary)

    cache = None
    if cfg.lang:
        store = JsonCacheStore(cache_file_for(cfg.cache_dir, cfg.lang, cfg.input_dir_arg)) if cfg.use_cache else None
        cache = FilenameCache(store)
        cache.load()

    mapper = PathMapper(
        cfg.input_dir,
        cfg.output_dir,
        lang=cfg.lang,
        cache=cache,
        translate_name=(lambda text: transformer.translate(text, cfg.lang)) if cfg.lang else None,
    )
    return FilePipeline(cfg, mapper, transformer, cache)


# ── Entry point ────────────────────────────────────────────────────────────────

def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="bulkai",
        description="Process or translate a directory tree of text files with an OpenAI model.",
        epilog=(
            "Example usage:\n"
            "  bulkai -p prefix.txt -s suffix.txt -i ./input -o ./output -f -H -e .md,.txt --lang es"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-p", "--prefix-file", metavar="PATH",
                        help="File whose content is added before each file's content.")
    parser.add_argument("-s", "--suffix-file", metavar="PATH",
                        help="File whose content is added after each file's content.")
    parser.add_argument("-i", "--input-dir", metavar="PATH", required=True,
                        help="Directory containing the files to process.")
    parser.add_argument("-g", "--glossary-file", metavar="PATH",
                        help="Glossary appended to the translation instructions.")
    parser.add_argument("-o", "--output-dir", metavar="PATH", required=True,
                        help="Directory where processed files are written.")
    parser.add_argument("-f", "--force", action="store_true",
                        help="Overwrite files that already exist in the output directory.")
    parser.add_argument("-H", "--hugo", action="store_true",
                        help='Remove everything before the first "---" in the model response.')
    parser.add_argument("-e", "--extensions", default=DEFAULT_EXTENSIONS,
                        help="Comma-separated list of file extensions to process (default: %(default)s).")
    parser.add_argument("-x", "--excluded", metavar="PARTS",
                        help="Comma-separated path fragments; matching files are skipped.")
    parser.add_argument("-l", "--lang",
                        help="Target language; translates contents and file names.")
    parser.add_argument("-m", "--model", default=DEFAULT_MODEL,
                        help="Chat completion model (default: %(default)s).")
    parser.add_argument("--api-url", default=DEFAULT_API_URL,
                        help="Base URL of the OpenAI-compatible API (default: %(default)s).")
    parser.add_argument("--timeout", type=float, default=REQUEST_TIMEOUT,
                        help="Seconds to wait for each completion (default: %(default)s).")
    parser.add_argument("--cache-dir", default=str(DEFAULT_CACHE_DIR), metavar="PATH",
                        help="Directory holding filename translation caches (default: %(default)s).")
    parser.add_argument("--no-cache", action="store_true",
                        help="Do not load or save the filename translation cache.")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Report skipped and excluded files.")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)

    api_key = os.environ.get("OPENAI_API_KEY")
    if not api_key:
        print("[ERROR] OpenAI API key is not set in the environment variables (OPENAI_API_KEY).",
              file=sys.stderr)
        return 1

    try:
        cfg = load_config(args, api_key)
    except OSError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1

    if not cfg.input_dir.is_dir():
        print(f"[ERROR] Input directory not found: {cfg.input_dir}", file=sys.stderr)
        return 1

    try:
        pipeline = build_pipeline(cfg)
        files = find_files(cfg.input_dir, cfg.extensions, cfg.excluded, verbose=cfg.verbose)
        written, skipped = pipeline.run(files)
    except (requests.RequestException, CompletionError, OSError, ValueError) as exc:
        # The whole run stops here; output written so far is kept.
        print(f"\n[ERROR] {exc}", file=sys.stderr)
        return 1

    print(f"\nDone. {written} file(s) written, {skipped} skipped.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
