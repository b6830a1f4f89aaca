"""测试共用的 Fake 后端。

FakeBackend / FakeSession 实现 providers.base 中的协议，
默认把最后一个片段原样回显为 "echo: <text>"，可通过 on_send 注入延迟或错误。
"""

import pytest

from meshchat_core.domain.models import Candidate, Content, GenerateResult, Part


def make_result(*texts: str) -> GenerateResult:
    parts = [Part(text=t) for t in texts]
    return GenerateResult(model="fake", candidates=[Candidate(content=Content(role="model", parts=parts))])


def make_turns(n: int):
    roles = ("user", "model")
    return [Content(role=roles[i % 2], parts=[Part(text=f"t{i}")]) for i in range(n)]


class FakeSession:
    def __init__(self, backend, model, system_instruction, history):
        self.backend = backend
        self.model = model
        self.system_instruction = system_instruction
        self.turns = list(history or [])
        self.sent = []

    async def send(self, parts):
        self.sent.append([p.text for p in parts])
        if self.backend.on_send is not None:
            result = await self.backend.on_send(self, parts)
        else:
            result = make_result(f"echo: {parts[-1].text}")
        self.turns.append(Content(role="user", parts=list(parts)))
        self.turns.append(result.candidates[0].content if result.candidates else Content(role="model"))
        return result

    def history(self, curated=True):
        return list(self.turns)


class FakeBackend:
    name = "fake"

    def __init__(self):
        self.create_calls = []
        self.sessions = []
        self.create_errors = []
        self.on_send = None
        self.closed = False

    async def create_session(self, model, system_instruction=None, history=None):
        self.create_calls.append((model, system_instruction, None if history is None else list(history)))
        if self.create_errors:
            raise self.create_errors.pop(0)
        session = FakeSession(self, model, system_instruction, history)
        self.sessions.append(session)
        return session

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture(name="make_result")
def make_result_fixture():
    return make_result


@pytest.fixture(name="make_turns")
def make_turns_fixture():
    return make_turns
