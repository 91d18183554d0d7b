from __future__ import annotations

import pathlib
import sys
import tempfile
import threading
import time
import unittest

SCRIPT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))
TESTS_DIR = pathlib.Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from query_syntax import QuerySyntaxError
from query_tokens import Tokenizer
from rtfm_index import IndexManager, ReadWriteLock
from rtfm_records import Command, Example
from test_query_tokens import ADVERSARIAL_QUERIES


def make_command(name: str, description: str, lang: str = "en", content: str = "", platform: str = "common") -> Command:
    return Command(
        name=name,
        description=description,
        category=platform,
        platform=platform,
        lang=lang,
        examples=[Example(description=description, code=name)],
        content=content or f"# {name}\n> {description}\n",
    )


DOCKER = make_command(
    "docker",
    "Manage Docker containers and images.",
    content="# docker\n> Manage Docker containers and images.\n\n- List containers:\n\n`docker ps -a`\n",
)
TAR = make_command("tar", "Archiving utility.")
DOCKER_ZH = make_command("docker", "管理 Docker 容器和镜像。", lang="zh", content="# docker\n> 复制文件到容器里。\n")
LS = make_command("ls", "List directory contents.", platform="linux")


class IndexManagerTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.tokenizer = Tokenizer()

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory(prefix="rtfm_index_")
        self.index_dir = pathlib.Path(self._tmp.name) / "index"
        self.index = IndexManager(self.index_dir, tokenizer=self.tokenizer)

    def tearDown(self) -> None:
        self.index.close()
        self._tmp.cleanup()

    def test_adversarial_query_finds_docker(self) -> None:
        self.index.rebuild([DOCKER, TAR, LS])
        response = self.index.search("docker ps -a --format '{{.Names}}'", limit=10)
        self.assertGreaterEqual(response.total, 1)
        self.assertEqual(response.results[0].name, "docker")
        self.assertGreater(response.results[0].score, 0)
        self.assertIsInstance(response.took_ms, int)
        self.assertGreaterEqual(response.took_ms, 0)

    def test_lang_filter_returns_only_that_language(self) -> None:
        self.index.rebuild([DOCKER, DOCKER_ZH, TAR])
        response = self.index.search("docker", lang="zh")
        self.assertEqual([(hit.name, hit.lang) for hit in response.results], [("docker", "zh")])
        response = self.index.search("docker", lang="en")
        self.assertTrue(response.results)
        self.assertTrue(all(hit.lang == "en" for hit in response.results))

    def test_cjk_query_matches_segmented_content(self) -> None:
        self.index.rebuild([DOCKER, DOCKER_ZH])
        response = self.index.search("复制文件", lang="zh")
        self.assertEqual([hit.name for hit in response.results], ["docker"])
        self.assertEqual(response.results[0].description, "管理 Docker 容器和镜像。")

    def test_limit_bounds_results_and_total(self) -> None:
        commands = [make_command(f"tool{i}", f"Shared utility number {i}.") for i in range(6)]
        self.index.rebuild(commands)
        for limit in (1, 3, 10):
            response = self.index.search("utility", limit=limit)
            self.assertLessEqual(len(response.results), limit)
            self.assertEqual(response.total, len(response.results))
        self.assertEqual(self.index.search("utility", limit=0).results, [])

    def test_rebuild_is_idempotent(self) -> None:
        commands = [DOCKER, TAR, LS]
        self.assertEqual(self.index.rebuild(commands), 3)
        self.index.rebuild(commands)
        self.assertEqual(self.index.document_count(), 3)

    def test_upsert_replaces_by_key_unless_asked_not_to(self) -> None:
        self.index.rebuild([DOCKER, TAR])
        self.index.upsert_one(make_command("tar", "Updated archiver."))
        self.assertEqual(self.index.document_count(key="en:tar"), 1)
        self.assertEqual(self.index.search("archiver").results[0].description, "Updated archiver.")

        self.index.upsert_one(make_command("tar", "Another archiver."), replace=False)
        self.assertEqual(self.index.document_count(key="en:tar"), 2)
        self.index.rebuild([DOCKER, TAR])
        self.assertEqual(self.index.document_count(key="en:tar"), 1)

    def test_clear_leaves_empty_searchable_index(self) -> None:
        self.index.index_all([DOCKER, TAR])
        self.index.clear_index()
        self.assertEqual(self.index.document_count(), 0)
        self.assertEqual(self.index.search("docker").total, 0)
        self.index.index_one(TAR)
        self.assertEqual(self.index.search("archiving").results[0].name, "tar")

    def test_failed_rebuild_keeps_last_commit(self) -> None:
        self.index.rebuild([DOCKER, TAR])

        def broken():
            yield LS
            raise RuntimeError("source went away")

        with self.assertRaises(RuntimeError):
            self.index.rebuild(broken())
        self.assertEqual(self.index.document_count(), 2)
        self.assertEqual(self.index.search("docker").results[0].name, "docker")

    def test_reader_snapshot_is_fixed_until_reload(self) -> None:
        other = IndexManager(self.index_dir, tokenizer=self.tokenizer)
        try:
            self.index.rebuild([DOCKER, TAR])
            self.assertEqual(other.document_count(), 0)
            other.reload()
            self.assertEqual(other.document_count(), 2)
        finally:
            other.close()

    def test_raw_queries(self) -> None:
        self.index.rebuild([DOCKER, DOCKER_ZH, TAR, LS])
        names = [hit.name for hit in self.index.search("name:tar OR name:ls", raw=True).results]
        self.assertEqual(sorted(names), ["ls", "tar"])
        listed = self.index.search("lang:zh", raw=True).results
        self.assertEqual([(hit.name, hit.score) for hit in listed], [("docker", 0.0)])
        excluded = self.index.search("docker -lang:zh", raw=True).results
        self.assertEqual([hit.lang for hit in excluded], ["en"])
        with self.assertRaises(QuerySyntaxError):
            self.index.search("docker {", raw=True)

    def test_adversarial_queries_run_against_the_index(self) -> None:
        self.index.rebuild([DOCKER, DOCKER_ZH, TAR, LS])
        for query in ADVERSARIAL_QUERIES:
            for lang in (None, "en", "zh"):
                with self.subTest(query=query, lang=lang):
                    response = self.index.search(query, lang=lang, limit=5)
                    self.assertLessEqual(len(response.results), 5)
                    if lang is not None:
                        self.assertTrue(all(hit.lang == lang for hit in response.results))
        names = [hit.name for hit in self.index.search("使用docker复制文件到容器", lang="zh").results]
        self.assertEqual(names, ["docker"])

    def test_empty_query_returns_nothing(self) -> None:
        self.index.rebuild([DOCKER])
        self.assertEqual(self.index.search("").total, 0)
        self.assertEqual(self.index.search("   ", lang="en").total, 0)


class ReadWriteLockTests(unittest.TestCase):
    def test_writer_excludes_readers(self) -> None:
        lock = ReadWriteLock()
        entered = threading.Event()

        def reader() -> None:
            with lock.shared():
                entered.set()

        with lock.exclusive():
            thread = threading.Thread(target=reader)
            thread.start()
            time.sleep(0.05)
            self.assertFalse(entered.is_set())
        thread.join(timeout=2)
        self.assertTrue(entered.is_set())

    def test_readers_share(self) -> None:
        lock = ReadWriteLock()
        with lock.shared():
            with lock.shared():
                pass


if __name__ == "__main__":
    unittest.main()
