import io
import json
import os
import tempfile
import unittest
from unittest import mock

from chatrelay.cli import _load_frames, main, simulate

PEER_MESSAGE = {"id": "p1", "author_id": "u2", "body": "via peer", "created_at": "2099-01-01T00:00:00Z"}

FRAMES = [
    {"t": "send", "body": "hi"},
    {"t": "feed", "connected": False},
    {"t": "insert", "author_id": "u2", "body": "missed"},
    {"t": "broadcast", "message": PEER_MESSAGE},
    {"t": "broadcast", "message": PEER_MESSAGE},
    {"t": "react", "message_id": "1", "emoji": "👍"},
    {"t": "pin", "message_id": "1"},
]


def parse_lines(text):
    return [json.loads(line) for line in text.splitlines() if line.strip()]


class TestLoadFrames(unittest.TestCase):
    def test_accepts_array_object_and_json_lines(self):
        self.assertEqual(_load_frames(io.StringIO('[{"t": "poll"}, {"t": "send", "body": "x"}]'))[1]["t"], "send")
        self.assertEqual(_load_frames(io.StringIO('{"t": "poll"}')), [{"t": "poll"}])
        self.assertEqual(
            _load_frames(io.StringIO('{"t": "poll"}\n\n{"t": "feed", "connected": true}\n')),
            [{"t": "poll"}, {"t": "feed", "connected": True}],
        )
        self.assertEqual(_load_frames(io.StringIO("  \n")), [])

    def test_rejects_frames_that_are_not_objects(self):
        for content in ("[1, 2]", "null", '"poll"', '{"t": "poll"}\n[1]\n'):
            with self.subTest(content=content):
                with self.assertRaises(ValueError):
                    _load_frames(io.StringIO(content))

    def test_invalid_json_lines_raise(self):
        with self.assertRaises(ValueError):
            _load_frames(io.StringIO('{"t": "poll"}\n{"t": \n'))


class TestSimulate(unittest.TestCase):
    def test_replay_reports_arrivals_then_reconciled_timeline(self):
        output = io.StringIO()

        simulate(FRAMES, output)

        records = parse_lines(output.getvalue())
        arrivals = [record for record in records if record["t"] == "arrival"]
        messages = [record for record in records if record["t"] == "message"]

        self.assertEqual([(a["id"], a["source"]) for a in arrivals], [("1", "change_feed"), ("p1", "broadcast")])
        self.assertEqual([m["id"] for m in messages], ["1", "p1"])

        own, peer = messages
        self.assertTrue(own["own"])
        self.assertTrue(own["pinned"])
        self.assertEqual(own["reactions"], [{"emoji": "👍", "count": 1, "reacted": True}])
        self.assertFalse(peer["own"])
        self.assertEqual(peer["author"], "User")
        self.assertEqual(peer["reactions"], [])

    def test_poll_frame_recovers_nothing_newer_than_watermark(self):
        output = io.StringIO()

        simulate([{"t": "broadcast", "message": PEER_MESSAGE}, {"t": "poll"}], output, user_id="u2")

        messages = [record for record in parse_lines(output.getvalue()) if record["t"] == "message"]
        self.assertEqual(len(messages), 1)
        self.assertTrue(messages[0]["own"])

    def test_unknown_frame_type_raises(self):
        with self.assertRaises(ValueError):
            simulate([{"t": "teleport"}], io.StringIO())


class TestMain(unittest.TestCase):
    def test_simulate_from_file(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "frames.jsonl")
            with open(path, "w", encoding="utf-8") as handle:
                handle.write("\n".join(json.dumps(frame, ensure_ascii=False) for frame in FRAMES))
            output = io.StringIO()

            exit_code = main(["simulate", "-f", path, "--conversation", "room-7"], output=output)

        self.assertEqual(exit_code, 0)
        messages = [record for record in parse_lines(output.getvalue()) if record["t"] == "message"]
        self.assertEqual([m["id"] for m in messages], ["1", "p1"])

    def test_simulate_bad_frame_returns_error(self):
        with mock.patch("sys.stdin", io.StringIO('[{"t": "teleport"}]')):
            with mock.patch("sys.stderr", io.StringIO()) as stderr:
                exit_code = main(["simulate"], output=io.StringIO())

        self.assertEqual(exit_code, 1)
        self.assertIn("unsupported frame type", stderr.getvalue())

    def test_simulate_non_object_frames_return_error(self):
        with mock.patch("sys.stdin", io.StringIO("[1, 2]")):
            with mock.patch("sys.stderr", io.StringIO()) as stderr:
                exit_code = main(["simulate"], output=io.StringIO())

        self.assertEqual(exit_code, 1)
        self.assertIn("JSON object", stderr.getvalue())

    def test_remote_commands_require_user_id(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            with mock.patch("sys.stderr", io.StringIO()):
                with self.assertRaises(SystemExit):
                    main(["send", "hello"], output=io.StringIO())

    def test_remote_commands_require_conversation(self):
        with mock.patch.dict(os.environ, {"RELAY_USER_ID": "u1"}, clear=True):
            with mock.patch("sys.stderr", io.StringIO()) as stderr:
                exit_code = main(["send", "hello"], output=io.StringIO())

        self.assertEqual(exit_code, 1)
        self.assertIn("RELAY_CONVERSATION_ID", stderr.getvalue())

    def test_remote_commands_require_backend_url(self):
        env = {"RELAY_USER_ID": "u1", "RELAY_CONVERSATION_ID": "c1"}
        with mock.patch.dict(os.environ, env, clear=True):
            with mock.patch("sys.stderr", io.StringIO()) as stderr:
                exit_code = main(["tail", "--duration", "0"], output=io.StringIO())

        self.assertEqual(exit_code, 1)
        self.assertIn("RELAY_BACKEND_URL", stderr.getvalue())


if __name__ == "__main__":
    unittest.main()
