#!/usr/bin/env python3
import os
import sys
import tempfile
import threading
import time
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from dingtalk_hook.exceptions import ConfigError, ConfigIOError, CrossReferenceError, HookError
from dingtalk_hook.fingerprint import fingerprint
from dingtalk_hook.reload import ReloadManager
from dingtalk_hook.runtime import build_snapshot, load_snapshot
from dingtalk_hook.config import MsgType, parse
from dingtalk_hook.store import AtomicStore

CONFIG = """
auth:
  token: "{token}"
template:
  dir: "templates"
dingtalk:
  robots:
    - name: "r1"
      webhook: "http://example.invalid"
      msg_type: "text"
  channels:
    - name: "default"
      robots: ["r1"]
      template: "{template}"
"""


class ReloadTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = self._tmp.name
        self.tpl_dir = os.path.join(self.dir, "templates")
        os.makedirs(self.tpl_dir)
        self.write_template("default.tmpl", "hello")
        self.cfg_path = os.path.join(self.dir, "config.yaml")
        self.write_config(token="a")

    def tearDown(self):
        self._tmp.cleanup()

    def write_config(self, token="a", template="default", raw=None):
        with open(self.cfg_path, "w", encoding="utf-8") as f:
            f.write(raw if raw is not None else CONFIG.format(token=token, template=template))
        self.bump(self.cfg_path)

    def write_template(self, name, text):
        path = os.path.join(self.tpl_dir, name)
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
        self.bump(path)

    def write_bad_template(self, name):
        path = os.path.join(self.tpl_dir, name)
        with open(path, "wb") as f:
            f.write(b"\xff\xfe bad")
        self.bump(path)
        return path

    def wait_for(self, predicate, timeout=5):
        deadline = time.time() + timeout
        while time.time() < deadline and not predicate():
            time.sleep(0.02)
        return predicate()

    @staticmethod
    def bump(path):
        # Garante mtime diferente mesmo em sistemas de arquivos com baixa resolução
        st = os.stat(path)
        os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))


class TestRuntime(ReloadTestCase):
    def test_load_snapshot(self):
        snap = load_snapshot(self.cfg_path)
        self.assertEqual(snap.config_path, self.cfg_path)
        self.assertEqual(snap.base_dir, self.dir)
        self.assertEqual(snap.targets["r1"].msg_type, MsgType.TEXT)
        self.assertEqual(sorted(snap.groups), ["default"])
        self.assertEqual(snap.renderer.render("default", {}), "hello")

    def test_unknown_template_is_cross_reference_error(self):
        self.write_config(template="missing")
        with self.assertRaises(CrossReferenceError):
            load_snapshot(self.cfg_path)

    def test_snapshot_is_immutable(self):
        snap = load_snapshot(self.cfg_path)
        with self.assertRaises(Exception):
            snap.routes = ()
        with self.assertRaises(TypeError):
            snap.groups["other"] = snap.groups["default"]

    def test_build_snapshot_from_parsed_config(self):
        with open(self.cfg_path, "rb") as f:
            cfg = parse(f.read(), self.dir)
        snap = build_snapshot(self.cfg_path, self.dir, cfg)
        self.assertEqual(snap.routes, ())

    def test_template_with_invalid_encoding(self):
        self.write_bad_template("ops.tmpl")
        with self.assertRaises(ConfigIOError) as ctx:
            load_snapshot(self.cfg_path)
        self.assertIn("ops.tmpl", str(ctx.exception))


class TestAtomicStore(ReloadTestCase):
    def test_store_and_load(self):
        first = load_snapshot(self.cfg_path)
        second = load_snapshot(self.cfg_path)
        store = AtomicStore(first)
        self.assertIs(store.load(), first)
        store.store(second)
        self.assertIs(store.load(), second)

    def test_rejects_none(self):
        with self.assertRaises(ValueError):
            AtomicStore(None)
        store = AtomicStore(load_snapshot(self.cfg_path))
        with self.assertRaises(ValueError):
            store.store(None)


class TestFingerprint(ReloadTestCase):
    def test_changes_with_metadata(self):
        snap = load_snapshot(self.cfg_path)
        fp1 = fingerprint(self.cfg_path, snap)
        self.assertEqual(fp1, fingerprint(self.cfg_path, snap))

        self.write_template("ops.tmpl", "ops")
        fp2 = fingerprint(self.cfg_path, snap)
        self.assertNotEqual(fp1, fp2)

        self.write_config(token="b")
        self.assertNotEqual(fp2, fingerprint(self.cfg_path, snap))

    def test_missing_template_dir_is_a_state(self):
        snap = load_snapshot(self.cfg_path)
        for name in os.listdir(self.tpl_dir):
            os.remove(os.path.join(self.tpl_dir, name))
        os.rmdir(self.tpl_dir)
        missing = fingerprint(self.cfg_path, snap)
        os.makedirs(self.tpl_dir)
        self.assertNotEqual(missing, fingerprint(self.cfg_path, snap))

    def test_missing_config_file(self):
        with self.assertRaises(ConfigError):
            fingerprint(os.path.join(self.dir, "nope.yaml"))


class TestReloadManager(ReloadTestCase):
    def setUp(self):
        super().setUp()
        self.store = AtomicStore(load_snapshot(self.cfg_path))
        self.mgr = ReloadManager(self.cfg_path, self.store, enabled=False, interval=2)

    def test_rollback_on_error(self):
        old = self.store.load()
        self.write_config(raw="dingtalk: [invalid")
        with self.assertRaises(HookError):
            self.mgr.reload(force=True)
        self.assertIs(self.store.load(), old)
        self.assertNotEqual(self.mgr.status().last_error, "")
        self.assertIsNone(self.mgr.status().last_success)

    def test_success_updates_store(self):
        old = self.store.load()
        self.write_config(token="b")
        self.assertTrue(self.mgr.reload(force=True))
        self.assertIsNot(self.store.load(), old)
        self.assertEqual(self.store.load().config.auth.token, "b")
        status = self.mgr.status()
        self.assertEqual(status.last_error, "")
        self.assertIsNotNone(status.last_success)

    def test_reload_if_changed(self):
        old = self.store.load()
        self.assertFalse(self.mgr.reload_if_changed())
        self.assertIs(self.store.load(), old)

        self.write_template("default.tmpl", "changed")
        self.assertTrue(self.mgr.reload_if_changed())
        self.assertEqual(self.store.load().renderer.render("", {}), "changed")
        self.assertFalse(self.mgr.reload_if_changed())

    def test_error_cleared_after_success(self):
        self.write_config(template="missing")
        with self.assertRaises(CrossReferenceError):
            self.mgr.reload_if_changed()
        self.assertIn("missing", self.mgr.status().last_error)
        self.write_config(token="c")
        self.assertTrue(self.mgr.reload_if_changed())
        self.assertEqual(self.mgr.status().last_error, "")

    def test_status_dict(self):
        d = self.mgr.status().as_dict()
        self.assertEqual(d, {"enabled": False, "last_success": None, "last_error": "", "last_failure": None})

    def test_unforced_reload_is_noop_without_changes(self):
        old = self.store.load()
        self.assertFalse(self.mgr.reload(force=False))
        self.assertFalse(self.mgr.reload(force=False))
        self.assertIs(self.store.load(), old)

    def test_failure_timestamp_recorded(self):
        self.write_config(raw="dingtalk: [invalid")
        with self.assertRaises(HookError):
            self.mgr.reload(force=True)
        self.assertIsNotNone(self.mgr.status().last_failure)

    def test_start_disabled(self):
        self.assertIsNone(self.mgr.start(threading.Event()))

    def test_poller_reloads_and_stops(self):
        mgr = ReloadManager(self.cfg_path, self.store, enabled=True, interval=0.05)
        stop = threading.Event()
        poller = mgr.start(stop)
        self.assertIsNotNone(poller)
        try:
            self.write_config(token="polled")
            deadline = time.time() + 5
            while time.time() < deadline and self.store.load().config.auth.token != "polled":
                time.sleep(0.02)
            self.assertEqual(self.store.load().config.auth.token, "polled")
        finally:
            stop.set()
            poller.join(timeout=2)
        self.assertFalse(poller.is_alive())

    def test_bad_template_encoding_recorded(self):
        old = self.store.load()
        self.write_bad_template("ops.tmpl")
        with self.assertRaises(ConfigIOError):
            self.mgr.reload(force=True)
        self.assertIs(self.store.load(), old)
        status = self.mgr.status()
        self.assertIn("ops.tmpl", status.last_error)
        self.assertIsNotNone(status.last_failure)

    def test_unexpected_error_recorded_as_hook_error(self):
        old = self.store.load()
        with patch("dingtalk_hook.reload.load_snapshot", side_effect=RuntimeError("boom")):
            with self.assertRaises(HookError):
                self.mgr.reload(force=True)
        self.assertIs(self.store.load(), old)
        self.assertEqual(self.mgr.status().last_error, "boom")

    def test_poller_survives_failure_and_recovers(self):
        mgr = ReloadManager(self.cfg_path, self.store, enabled=True, interval=0.05)
        stop = threading.Event()
        poller = mgr.start(stop)
        try:
            bad = self.write_bad_template("ops.tmpl")
            self.assertTrue(self.wait_for(lambda: "ops.tmpl" in mgr.status().last_error))
            time.sleep(0.2)
            self.assertTrue(poller.is_alive())
            self.assertEqual(self.store.load().config.auth.token, "a")

            os.remove(bad)
            self.write_config(token="b")
            self.assertTrue(self.wait_for(lambda: self.store.load().config.auth.token == "b"))
            self.assertEqual(mgr.status().last_error, "")
        finally:
            stop.set()
            poller.join(timeout=2)

    def test_poller_survives_unexpected_error(self):
        mgr = ReloadManager(self.cfg_path, self.store, enabled=True, interval=0.05)
        stop = threading.Event()
        poller = None
        try:
            with patch.object(mgr, "reload_if_changed", side_effect=RuntimeError("boom")):
                poller = mgr.start(stop)
                self.assertTrue(self.wait_for(lambda: mgr.status().last_error == "boom"))
                self.assertTrue(poller.is_alive())
            self.write_config(token="after")
            self.assertTrue(self.wait_for(lambda: self.store.load().config.auth.token == "after"))
        finally:
            stop.set()
            if poller is not None:
                poller.join(timeout=2)
        self.assertFalse(poller.is_alive())


ROUTED = """
auth:
  token: "{token}"
template:
  dir: "templates"
dingtalk:
  robots:
    - name: "r1"
      webhook: "http://example.invalid"
  channels:
    - name: "default"
      robots: ["r1"]
    - name: "g-{token}"
      robots: ["r1"]
  routes:
    - name: "route-{token}"
      channels: ["g-{token}"]
"""


class TestReloadConcurrency(ReloadTestCase):
    def setUp(self):
        super().setUp()
        self.write_routed("a")
        self.store = AtomicStore(load_snapshot(self.cfg_path))
        self.mgr = ReloadManager(self.cfg_path, self.store, enabled=False)

    def write_routed(self, token=None, raw=None):
        # os.replace deixa quem lê o arquivo ver a versão antiga ou a nova inteira
        tmp = f"{self.cfg_path}.{threading.get_ident()}"
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(raw if raw is not None else ROUTED.format(token=token))
        os.replace(tmp, self.cfg_path)

    def test_readers_see_complete_snapshots(self):
        tokens = {"a"}
        for w in range(2):
            tokens.update(f"w{w}-{i}" for i in range(12))
        problems = []
        stop = threading.Event()

        def reader():
            seen = 0
            while not stop.is_set() or seen == 0:
                snap = self.store.load()
                token = snap.config.auth.token
                if token not in tokens:
                    problems.append(f"unknown token {token!r}")
                if set(snap.groups) != {"default", f"g-{token}"}:
                    problems.append(f"groups {sorted(snap.groups)} with token {token!r}")
                if [r.groups for r in snap.routes] != [(f"g-{token}",)]:
                    problems.append(f"routes {snap.routes} with token {token!r}")
                seen += 1

        def reloader(w):
            for i in range(12):
                if i % 3 == 2:
                    self.write_routed(raw="dingtalk: [invalid")
                else:
                    self.write_routed(f"w{w}-{i}")
                try:
                    self.mgr.reload(force=True)
                except HookError:
                    pass
                except Exception as e:
                    problems.append(f"reload raised {e!r}")

        readers = [threading.Thread(target=reader) for _ in range(4)]
        reloaders = [threading.Thread(target=reloader, args=(w,)) for w in range(2)]
        for t in readers + reloaders:
            t.start()
        for t in reloaders:
            t.join(timeout=30)
        stop.set()
        for t in readers:
            t.join(timeout=10)

        self.assertEqual(problems, [])
        self.assertIn(self.store.load().config.auth.token, tokens)

        self.write_routed("final")
        self.assertTrue(self.mgr.reload(force=True))
        self.assertEqual(self.store.load().config.auth.token, "final")
        self.assertEqual(self.mgr.status().last_error, "")

    def test_concurrent_reloads_keep_bookkeeping_consistent(self):
        self.write_routed("b")
        results = []
        barrier = threading.Barrier(6)

        def run():
            barrier.wait()
            results.append(self.mgr.reload(force=True))

        threads = [threading.Thread(target=run) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        self.assertEqual(results, [True] * 6)
        status = self.mgr.status()
        self.assertEqual(status.last_error, "")
        self.assertIsNotNone(status.last_success)
        self.assertIsNone(status.last_failure)
        self.assertEqual(self.store.load().config.auth.token, "b")
        # Fingerprint final corresponde ao estado em disco
        self.assertFalse(self.mgr.reload_if_changed())

    def test_failure_then_success_clears_error_under_contention(self):
        self.write_routed(raw="dingtalk: [invalid")
        errors = []

        def run():
            try:
                self.mgr.reload(force=True)
            except HookError as e:
                errors.append(e)

        threads = [threading.Thread(target=run) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        self.assertEqual(len(errors), 4)
        self.assertNotEqual(self.mgr.status().last_error, "")
        self.assertEqual(self.store.load().config.auth.token, "a")

        self.write_routed("c")
        self.assertTrue(self.mgr.reload(force=True))
        status = self.mgr.status()
        self.assertEqual(status.last_error, "")
        self.assertIsNotNone(status.last_failure)
        self.assertGreaterEqual(status.last_success, status.last_failure)


if __name__ == '__main__':
    unittest.main()
