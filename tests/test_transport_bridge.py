import asyncio
import base64
import json
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace

from interviewer.audio import AudioPipeline
from interviewer.bridge import Participant, RoomManager, TransportBridge
from interviewer.document import PRD_SCHEMA
from interviewer.persistence import AuditLog, CaseStore, DocumentStore, TranscriptStore
from interviewer.sessions import SessionKind, SessionRegistry


def _chunk(content=None, tool_calls=None):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=tool_calls))])


def _tool(index, *, id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))


class _FakeLLM:
    model = "fake-model"

    def __init__(self, scripts):
        self.scripts = list(scripts)
        self.calls = []

    async def stream_chat(self, messages, *, tools=None):
        self.calls.append({"messages": [dict(m) for m in messages], "tools": tools})
        script = self.scripts.pop(0)
        if isinstance(script, Exception):
            raise script

        async def _gen():
            for item in script:
                yield item

        return _gen()


class _GatedLLM(_FakeLLM):
    """Holds the listed model calls (by call index) until their gate is set."""

    def __init__(self, scripts, gates):
        super().__init__(scripts)
        self.gates = gates

    async def stream_chat(self, messages, *, tools=None):
        gate = self.gates.get(len(self.calls))
        if gate is None:
            return await super().stream_chat(messages, tools=tools)
        self.calls.append({"messages": [dict(m) for m in messages], "tools": tools})
        await gate.wait()
        self.calls.pop()
        return await super().stream_chat(messages, tools=tools)


async def _until(predicate, rounds=200):
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def _update(section, content, call_id="call_1"):
    return [
        _chunk(
            tool_calls=[
                _tool(
                    0,
                    id=call_id,
                    name="update_prd_section",
                    arguments=json.dumps({"sectionKey": section, "content": content}),
                )
            ]
        )
    ]


class _FakeWebSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_json(self, payload):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(payload)

    def types(self):
        return [p["type"] for p in self.sent]

    def of_type(self, event_type):
        return [p for p in self.sent if p["type"] == event_type]


def _participant(kind, ip="198.51.100.7", fail=False):
    ws = _FakeWebSocket(fail=fail)
    return Participant(ws, kind=kind, client_ip=ip), ws


class TestRoomManager(unittest.IsolatedAsyncioTestCase):
    async def test_broadcast_skips_dead_members(self):
        rooms = RoomManager()
        alive, alive_ws = _participant(SessionKind.INTERVIEW)
        dead, _ = _participant(SessionKind.INTERVIEW, fail=True)
        rooms.join("session:1", alive)
        rooms.join("session:1", dead)
        rooms.join("session:1", alive)

        delivered = await rooms.broadcast("session:1", {"type": "ping"})
        self.assertEqual(delivered, 1)
        self.assertEqual(alive_ws.sent, [{"type": "ping"}])

        self.assertEqual(rooms.leave("session:1", dead), 1)
        self.assertEqual(rooms.leave("session:1", alive), 0)
        self.assertEqual(rooms.members("session:1"), [])


class _BridgeTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)
        self.registry = SessionRegistry(intake_sessions_per_ip=2)
        self.transcripts = TranscriptStore(self.root)
        self.documents = DocumentStore(self.root)
        self.audit = AuditLog(self.root / "agent_events.jsonl")

    def make_bridge(self, llm, **config):
        cfg = {"intake_max_turns": 20, "reply_language": "English"}
        cfg.update(config)
        return TransportBridge(
            self.registry,
            llm=llm,
            audio=AudioPipeline(None),
            transcripts=self.transcripts,
            documents=self.documents,
            cases=CaseStore(self.root),
            audit=self.audit,
            config=cfg,
        )


class TestInterviewBridge(_BridgeTestCase):
    async def test_turn_is_broadcast_to_every_participant(self):
        llm = _FakeLLM(
            [
                [
                    _chunk(
                        tool_calls=[
                            _tool(
                                0,
                                id="call_1",
                                name="update_prd_section",
                                arguments=json.dumps({"sectionKey": "background", "content": "Regional courier firm"}),
                            )
                        ]
                    )
                ],
                [_chunk("Who dispatches "), _chunk("the drivers today?")],
            ]
        )
        bridge = self.make_bridge(llm)
        consultant, consultant_ws = _participant(SessionKind.INTERVIEW)
        supervisor, supervisor_ws = _participant(SessionKind.INTERVIEW)

        await bridge.handle_event(consultant, {"type": "join", "session_id": 1, "case_id": 9})
        await bridge.handle_event(supervisor, {"type": "join", "session_id": "1", "case_id": "9"})
        self.assertEqual(consultant_ws.sent[0]["type"], "session_joined")
        self.assertFalse(consultant_ws.sent[0]["transcription_available"])

        await bridge.handle_user_message(consultant, "They deliver parcels in the south")

        self.assertEqual(
            supervisor_ws.types(),
            [
                "session_joined",
                "message",
                "agent_typing",
                "agent_stream",
                "agent_stream",
                "agent_typing",
                "document_changed",
                "message",
                "tool_calls",
            ],
        )
        self.assertEqual(supervisor_ws.sent[1]["role"], "user")
        self.assertEqual(supervisor_ws.sent[2]["value"], True)
        changed = supervisor_ws.of_type("document_changed")[0]
        self.assertEqual(changed["completeness"], 8)
        self.assertEqual(changed["last_updated_section"], "background")
        final = supervisor_ws.sent[7]
        self.assertEqual((final["role"], final["content"]), ("assistant", "Who dispatches the drivers today?"))
        self.assertEqual(supervisor_ws.of_type("tool_calls")[0]["calls"][0]["name"], "update_prd_section")
        self.assertEqual(consultant_ws.types()[1:], supervisor_ws.types()[1:])

        entries = self.transcripts.read(1)
        self.assertEqual([(e["speaker"], e["sequence_number"]) for e in entries], [("consultant", 0), ("agent", 1)])
        self.assertEqual(self.documents.load(9, PRD_SCHEMA).sections["background"], "Regional courier firm")
        self.assertIn("prd_update", [e["event_type"] for e in self.audit.read()])

    async def test_session_is_rebuilt_after_last_participant_leaves(self):
        llm = _FakeLLM([[_chunk("Tell me about your team.")]])
        bridge = self.make_bridge(llm)
        consultant, _ = _participant(SessionKind.INTERVIEW)
        await bridge.handle_join(consultant, {"session_id": 4, "case_id": 2})
        await bridge.handle_user_message(consultant, "Hello")
        await bridge.handle_disconnect(consultant)
        self.assertIsNone(self.registry.get(4))

        again, again_ws = _participant(SessionKind.INTERVIEW)
        session = await bridge.handle_join(again, {"session_id": 4, "case_id": 2})
        self.assertEqual(
            session.history,
            [{"role": "user", "content": "Hello"}, {"role": "assistant", "content": "Tell me about your team."}],
        )
        self.assertEqual(session.transcript_seq, 2)
        self.assertEqual(again_ws.sent[0]["session_id"], 4)

    async def test_backend_failure_reports_error(self):
        bridge = self.make_bridge(_FakeLLM([RuntimeError("all routes down")]))
        consultant, ws = _participant(SessionKind.INTERVIEW)
        session = await bridge.handle_join(consultant, {"session_id": 3, "case_id": 1})

        await bridge.handle_user_message(consultant, "Anything")

        self.assertEqual(ws.types()[-2:], ["agent_typing", "error"])
        self.assertFalse(ws.sent[-2]["value"])
        self.assertEqual(ws.sent[-1]["code"], "backend_error")
        self.assertEqual(session.history, [])
        self.assertEqual(self.transcripts.read(3), [])

    async def test_turns_run_one_at_a_time_in_arrival_order(self):
        gate = asyncio.Event()
        llm = _GatedLLM([[_chunk("reply one")], [_chunk("reply two")]], gates={0: gate})
        bridge = self.make_bridge(llm)
        consultant, ws = _participant(SessionKind.INTERVIEW)
        await bridge.handle_join(consultant, {"session_id": 11, "case_id": 1})

        await bridge.handle_event(consultant, {"type": "user_message", "text": "first"})
        await bridge.handle_event(consultant, {"type": "user_message", "text": "second"})
        await _until(lambda: len(llm.calls) == 1)
        for _ in range(10):
            await asyncio.sleep(0)
        self.assertEqual(len(llm.calls), 1)

        gate.set()
        await bridge.drain()

        second_call = llm.calls[1]["messages"][1:]
        self.assertEqual(
            [(m["role"], m["content"]) for m in second_call],
            [("user", "first"), ("assistant", "reply one"), ("user", "second")],
        )
        replies = [m["content"] for m in ws.of_type("message") if m["role"] == "assistant"]
        self.assertEqual(replies, ["reply one", "reply two"])

    async def test_rejoin_during_turn_reuses_live_session(self):
        gate = asyncio.Event()
        llm = _GatedLLM(
            [
                _update("background", "Courier firm"),
                [_chunk("Who uses the system?")],
                _update("users", "Dispatchers", call_id="call_2"),
                [_chunk("Thanks.")],
            ],
            gates={1: gate},
        )
        bridge = self.make_bridge(llm)
        consultant, _ = _participant(SessionKind.INTERVIEW)
        session = await bridge.handle_join(consultant, {"session_id": 5, "case_id": 7})

        await bridge.handle_event(consultant, {"type": "user_message", "text": "They run couriers"})
        await _until(lambda: len(llm.calls) == 2)
        await bridge.handle_disconnect(consultant)
        self.assertIs(self.registry.get(5), session)

        again, _ = _participant(SessionKind.INTERVIEW)
        rejoined = await bridge.handle_join(again, {"session_id": 5, "case_id": 7})
        self.assertIs(rejoined, session)
        self.assertEqual(rejoined.document.sections["background"], "Courier firm")

        gate.set()
        await bridge.drain()
        await bridge.handle_user_message(again, "Dispatchers use it")

        stored = self.documents.load(7, PRD_SCHEMA).sections
        self.assertEqual(stored["background"], "Courier firm")
        self.assertEqual(stored["users"], "Dispatchers")
        self.assertEqual(
            [e["speaker"] for e in self.transcripts.read(5)],
            ["consultant", "agent", "consultant", "agent"],
        )

    async def test_disconnect_mid_turn_keeps_document_changes(self):
        gate = asyncio.Event()
        llm = _GatedLLM([_update("background", "Bakery chain"), [_chunk("How many stores?")]], gates={1: gate})
        bridge = self.make_bridge(llm)
        consultant, _ = _participant(SessionKind.INTERVIEW)
        await bridge.handle_join(consultant, {"session_id": 12, "case_id": 3})

        await bridge.handle_event(consultant, {"type": "user_message", "text": "We bake bread"})
        await _until(lambda: len(llm.calls) == 2)
        await bridge.handle_disconnect(consultant)
        self.assertIsNotNone(self.registry.get(12))

        gate.set()
        await bridge.drain()

        self.assertIsNone(self.registry.get(12))
        self.assertEqual(self.documents.load(3, PRD_SCHEMA).sections["background"], "Bakery chain")
        self.assertEqual([e["speaker"] for e in self.transcripts.read(12)], ["consultant", "agent"])

    async def test_failed_background_task_is_logged(self):
        bridge = self.make_bridge(None)

        async def _boom():
            raise RuntimeError("boom")

        with self.assertLogs("interviewer.bridge", level="ERROR") as logs:
            bridge._spawn(_boom())
            await bridge.drain()
        self.assertIn("boom", logs.output[0])
        self.assertEqual(bridge._tasks, set())

    async def test_join_validation(self):
        bridge = self.make_bridge(None)
        consultant, ws = _participant(SessionKind.INTERVIEW)
        await bridge.handle_event(consultant, {"type": "join", "session_id": "abc", "case_id": 1})
        self.assertEqual(ws.sent[-1]["code"], "invalid_join")

        await bridge.handle_event(consultant, {"type": "user_message", "text": "hi"})
        await bridge.drain()
        self.assertEqual(ws.sent[-1]["code"], "not_joined")

        await bridge.handle_event(consultant, {"type": "dance"})
        self.assertEqual(ws.sent[-1]["code"], "unknown_event")

    async def test_unconfigured_llm(self):
        bridge = self.make_bridge(None)
        consultant, ws = _participant(SessionKind.INTERVIEW)
        session = await bridge.handle_join(consultant, {"session_id": 5, "case_id": 1})
        await bridge.handle_user_message(consultant, "hi")
        self.assertEqual(ws.sent[-1]["code"], "llm_unconfigured")
        self.assertEqual(session.turn_count, 0)

    async def test_audio_stop_broadcasts_result(self):
        bridge = self.make_bridge(None)
        consultant, consultant_ws = _participant(SessionKind.INTERVIEW)
        supervisor, supervisor_ws = _participant(SessionKind.INTERVIEW)
        session = await bridge.handle_join(consultant, {"session_id": 6, "case_id": 1})
        await bridge.handle_join(supervisor, {"session_id": 6, "case_id": 1})

        await bridge.handle_event(consultant, {"type": "audio_chunk", "chunk": base64.b64encode(b"abc").decode()})
        await bridge.handle_audio_chunk(consultant, b"def")
        self.assertEqual(session.audio.pending_bytes, 6)

        await bridge.handle_event(consultant, {"type": "audio_stop"})
        await bridge.drain()

        self.assertEqual(session.audio.pending, [])
        self.assertEqual(supervisor_ws.sent[-1]["type"], "transcription_result")
        self.assertEqual(supervisor_ws.sent[-1]["error"], "Transcription is not available")
        self.assertEqual(consultant_ws.sent[-1], supervisor_ws.sent[-1])

    async def test_invalid_base64_audio(self):
        bridge = self.make_bridge(None)
        consultant, ws = _participant(SessionKind.INTERVIEW)
        await bridge.handle_join(consultant, {"session_id": 8, "case_id": 1})
        await bridge.handle_event(consultant, {"type": "audio_chunk", "chunk": "***"})
        self.assertEqual(ws.sent[-1]["code"], "invalid_audio")


class TestIntakeBridge(_BridgeTestCase):
    async def test_intake_turn_updates_document(self):
        llm = _FakeLLM(
            [
                [_chunk(tool_calls=[_tool(0, id="c1", name="update_intake", arguments='{"painPoints": "Quotes take 3 days"}')])],
                [_chunk("How many quotes per week?")],
            ]
        )
        bridge = self.make_bridge(llm)
        visitor, ws = _participant(SessionKind.INTAKE)
        session = await bridge.handle_join(visitor, {})
        self.assertEqual(ws.sent[0]["session_id"], session.id)

        await bridge.handle_user_message(visitor, "Quoting is slow")

        changed = ws.of_type("document_changed")[0]
        self.assertEqual(changed["completeness"], 25)
        self.assertEqual(changed["sections"]["painPoints"], "Quotes take 3 days")
        self.assertFalse(changed["is_complete"])
        self.assertEqual(ws.sent[-1]["content"], "How many quotes per week?")
        self.assertNotIn("tool_calls", ws.types())
        # Intake sessions are not written to the interview transcript log.
        self.assertFalse((self.root / "transcripts").exists())

    async def test_admission_cap_rejects_extra_sessions(self):
        bridge = self.make_bridge(None)
        for _ in range(2):
            visitor, ws = _participant(SessionKind.INTAKE, ip="203.0.113.5")
            self.assertIsNotNone(await bridge.handle_join(visitor, {}))

        visitor, ws = _participant(SessionKind.INTAKE, ip="203.0.113.5")
        self.assertIsNone(await bridge.handle_join(visitor, {}))
        self.assertEqual(ws.sent[-1]["type"], "error")
        self.assertEqual(ws.sent[-1]["code"], "rate_limited")
        self.assertEqual(self.registry.counts()["intake"], 2)

    async def test_turn_quota_stops_before_model_call(self):
        llm = _FakeLLM([[_chunk("first answer")]])
        bridge = self.make_bridge(llm, intake_max_turns=1)
        visitor, ws = _participant(SessionKind.INTAKE)
        await bridge.handle_join(visitor, {})

        await bridge.handle_user_message(visitor, "one")
        await bridge.handle_user_message(visitor, "two")

        self.assertEqual(len(llm.calls), 1)
        self.assertEqual(ws.sent[-1]["code"], "turn_quota")

    async def test_disconnect_discards_intake_session(self):
        bridge = self.make_bridge(None)
        visitor, _ = _participant(SessionKind.INTAKE)
        session = await bridge.handle_join(visitor, {})
        await bridge.handle_disconnect(visitor)
        self.assertIsNone(self.registry.get(session.id))

        await bridge.handle_user_message(visitor, "still there?")
        self.assertEqual(len(visitor.websocket.sent), 1)

    async def test_expired_session_reports_error(self):
        bridge = self.make_bridge(_FakeLLM([]))
        visitor, ws = _participant(SessionKind.INTAKE)
        session = await bridge.handle_join(visitor, {})
        self.registry.delete(session.id)

        await bridge.handle_user_message(visitor, "hello?")
        self.assertEqual(ws.sent[-1]["code"], "session_expired")


if __name__ == "__main__":
    unittest.main()
