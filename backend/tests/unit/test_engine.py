# backend/tests/unit/test_engine.py
import httpx
import pytest
from unittest.mock import call

from flowbot.config import strings
from flowbot.models.flow import NodeType
from flowbot.services.http_service import ExternalApiClient
from flowbot.workflows.engine import FlowEngine, Outcome
from flowbot.workflows.errors import ExternalAPIError, StartNodeError

PROJECT = "proj-1"
USER = "15551234567"
KEY = f"flow-state:{USER}:{PROJECT}"


def var_key(name):
    return f"flow-var:{USER}:{PROJECT}:{name}"


@pytest.fixture
def signup_graph(flow):
    return flow.graph(
        [
            flow.node("s", "start"),
            flow.node("m", "message", message="Welcome"),
            flow.node("q", "question", question="What's your email?", validation="email", propertyName="email"),
            flow.node("done", "message", message="Thanks!"),
            flow.node("e", "end"),
        ],
        [flow.edge("s", "m"), flow.edge("m", "q"), flow.edge("q", "done"), flow.edge("done", "e")],
    )


@pytest.fixture
def buttons_graph(flow):
    return flow.graph(
        [
            flow.node("s", "start"),
            flow.node("b", "buttons", message="Pick", buttons=["Yes please", "No"]),
            flow.node("y", "message", message="Great"),
            flow.node("n", "message", message="Bye"),
            flow.node("e", "end", message="Goodbye"),
        ],
        [flow.edge("s", "b"), flow.edge("b", "y", "yes_please"), flow.edge("b", "n", "No")],
    )


class TestQuestionFlow:

    @pytest.mark.asyncio
    async def test_fresh_session_sends_welcome_and_asks(self, engine, store, gateway, texts, signup_graph):
        outcome = await engine.process_message(signup_graph, PROJECT, USER, "hi")

        assert outcome == Outcome.SUSPENDED
        assert texts(gateway) == ["Welcome", "What's your email?"]
        assert store.data[f"{KEY}:questionPending"] == "q"
        assert store.data[KEY] == "q"
        assert store.ttls[KEY] == 3600

    @pytest.mark.asyncio
    async def test_invalid_then_valid_answer(self, engine, store, gateway, texts, signup_graph):
        await engine.process_message(signup_graph, PROJECT, USER, "hi")

        outcome = await engine.process_message(signup_graph, PROJECT, USER, "not-an-email")
        assert outcome == Outcome.SUSPENDED
        assert texts(gateway)[-1] == (
            "That doesn't look like a valid email address. Please try again. (1/3 attempts used)\nWhat's your email?"
        )
        assert store.data[f"{KEY}:questionRetries"] == "1"

        outcome = await engine.process_message(signup_graph, PROJECT, USER, "  a@b.com ")
        assert outcome == Outcome.ENDED
        assert store.data[var_key("email")] == "a@b.com"
        assert texts(gateway)[-1] == "Thanks!"
        assert f"{KEY}:questionPending" not in store.data
        assert f"{KEY}:questionRetries" not in store.data
        assert KEY not in store.data

    @pytest.mark.asyncio
    async def test_retry_limit_terminates_session(self, engine, store, gateway, texts, signup_graph):
        await engine.process_message(signup_graph, PROJECT, USER, "hi")

        outcomes = [await engine.process_message(signup_graph, PROJECT, USER, "nope") for _ in range(3)]

        assert outcomes == [Outcome.SUSPENDED, Outcome.SUSPENDED, Outcome.ENDED]
        assert texts(gateway)[-1] == strings.QUESTION_TERMINATED.format(max_attempts=3)
        assert not any(key.startswith(KEY) for key in store.data)

        # the next message starts over
        await engine.process_message(signup_graph, PROJECT, USER, "hello again")
        assert texts(gateway)[-2:] == ["Welcome", "What's your email?"]

    @pytest.mark.asyncio
    async def test_per_node_retry_limit(self, engine, store, gateway, flow):
        graph = flow.graph(
            [flow.node("s", "start"), flow.node("q", "question", question="Phone?", validation="phonenumber", maxRetries=1)],
            [flow.edge("s", "q")],
        )
        await engine.process_message(graph, PROJECT, USER, "hi")
        outcome = await engine.process_message(graph, PROJECT, USER, "12")

        assert outcome == Outcome.ENDED
        assert KEY not in store.data

    @pytest.mark.asyncio
    async def test_stale_question_marker_falls_back_to_start(self, engine, store, gateway, texts, signup_graph):
        store.data[f"{KEY}:questionPending"] = "deleted-node"

        await engine.process_message(signup_graph, PROJECT, USER, "hi")

        assert texts(gateway) == ["Welcome", "What's your email?"]
        assert store.data[f"{KEY}:questionPending"] == "q"

    @pytest.mark.asyncio
    async def test_send_failure_does_not_stop_flow(self, engine, store, gateway, signup_graph):
        gateway.send_text.return_value = None

        outcome = await engine.process_message(signup_graph, PROJECT, USER, "hi")

        assert outcome == Outcome.SUSPENDED
        assert store.data[f"{KEY}:questionPending"] == "q"


class TestStartResolution:

    @pytest.mark.asyncio
    async def test_stored_position_is_resumed(self, engine, store, gateway, texts, signup_graph):
        store.data[KEY] = "done"

        await engine.process_message(signup_graph, PROJECT, USER, "anything")

        assert texts(gateway) == ["Thanks!"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("start_count", [0, 2])
    async def test_start_node_count_must_be_one(self, engine, gateway, flow, start_count):
        nodes = [flow.node(f"s{i}", "start") for i in range(start_count)] + [flow.node("m", "message", message="x")]
        graph = flow.graph(nodes, [flow.edge("s0", "m")] if start_count else [])

        with pytest.raises(StartNodeError):
            graph.start_node()
        assert await engine.process_message(graph, PROJECT, USER, "hi") == Outcome.IGNORED
        gateway.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_node_deletes_session(self, engine, store, gateway, signup_graph):
        store.data[KEY] = "ghost"

        outcome = await engine.process_message(signup_graph, PROJECT, USER, "hi")

        assert outcome == Outcome.ABORTED
        assert KEY not in store.data
        gateway.send_text.assert_not_awaited()


class TestAutoAdvance:

    @pytest.mark.asyncio
    async def test_cycle_is_halted_by_step_budget(self, engine, store, gateway, texts, flow):
        graph = flow.graph(
            [flow.node("s", "start"), flow.node("a", "message", message="loop"), flow.node("b", "message", message="again")],
            [flow.edge("s", "a"), flow.edge("a", "b"), flow.edge("b", "a")],
        )

        outcome = await engine.process_message(graph, PROJECT, USER, "hi")

        assert outcome == Outcome.ABORTED
        assert texts(gateway)[-1] == strings.GENERIC_FAILURE
        assert len(texts(gateway)) == 20  # 19 loop messages after the start node, plus the failure notice
        assert KEY not in store.data

    @pytest.mark.asyncio
    async def test_wait_for_user_reply_suspends(self, engine, store, gateway, texts, flow):
        graph = flow.graph(
            [
                flow.node("s", "start"),
                flow.node("m1", "message", message="Hello", waitForUserReply=True),
                flow.node("m2", "message", message="Second"),
            ],
            [flow.edge("s", "m1"), flow.edge("m1", "m2")],
        )

        assert await engine.process_message(graph, PROJECT, USER, "hi") == Outcome.SUSPENDED
        assert texts(gateway) == ["Hello"]
        assert store.data[KEY] == "m2"

        assert await engine.process_message(graph, PROJECT, USER, "ok") == Outcome.ENDED
        assert texts(gateway) == ["Hello", "Second"]
        assert KEY not in store.data

    @pytest.mark.asyncio
    async def test_quick_reply_sent_before_node(self, engine, gateway, texts, flow):
        graph = flow.graph(
            [flow.node("s", "start"), flow.node("m", "message", message="Welcome", quickReply="One sec")],
            [flow.edge("s", "m")],
        )

        await engine.process_message(graph, PROJECT, USER, "hi")

        assert texts(gateway) == ["One sec", "Welcome"]

    @pytest.mark.asyncio
    async def test_media_node(self, engine, gateway, flow):
        graph = flow.graph(
            [
                flow.node("s", "start"),
                flow.node("md", "media", mediaUrl="https://cdn.example.com/menu.pdf", mediaType="document",
                          caption="Menu", filename="menu.pdf"),
            ],
            [flow.edge("s", "md")],
        )

        await engine.process_message(graph, PROJECT, USER, "hi")

        gateway.send_media.assert_awaited_once_with(USER, "https://cdn.example.com/menu.pdf", "document", "Menu", "menu.pdf")


class TestCondition:

    @pytest.fixture
    def graph(self, flow):
        return flow.graph(
            [
                flow.node("s", "start"),
                flow.node("c", "keywordMatch", keywords="price, cost"),
                flow.node("t", "message", message="Prices"),
                flow.node("f", "message", message="Other"),
            ],
            [flow.edge("s", "c"), flow.edge("c", "t", "true"), flow.edge("c", "f", "false")],
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text, expected", [
        ("What is the PRICE?", "Prices"),
        ("how much does it cost", "Prices"),
        ("hello", "Other"),
    ])
    async def test_keyword_branching(self, engine, gateway, texts, graph, text, expected):
        await engine.process_message(graph, PROJECT, USER, text)
        assert texts(gateway) == [expected]

    @pytest.mark.asyncio
    async def test_empty_keyword_list_is_false(self, engine, gateway, texts, flow):
        graph = flow.graph(
            [flow.node("s", "start"), flow.node("c", "condition", keywords=" , "),
             flow.node("t", "message", message="yes"), flow.node("f", "message", message="no")],
            [flow.edge("s", "c"), flow.edge("c", "t", "true"), flow.edge("c", "f", "false")],
        )
        await engine.process_message(graph, PROJECT, USER, "anything")
        assert texts(gateway) == ["no"]


class TestButtons:

    @pytest.mark.asyncio
    async def test_buttons_suspend_and_record_awaiting(self, engine, store, gateway, buttons_graph):
        outcome = await engine.process_message(buttons_graph, PROJECT, USER, "hi")

        assert outcome == Outcome.SUSPENDED
        args = gateway.send_buttons.await_args.args
        assert args[0] == USER
        assert args[1] == "Pick"
        assert [b.title for b in args[2]] == ["Yes please", "No"]
        assert store.data[KEY] == "b"
        assert '"nodeId": "b"' in store.data[f"{KEY}:awaitingButtonResponse"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply", ["Yes please", "  YES   please ", "yes_please", "btn_1_yes_please", "BTN_1_Yes_Please"])
    async def test_equivalent_spellings_take_same_branch(self, engine, store, gateway, texts, buttons_graph, reply):
        await engine.process_message(buttons_graph, PROJECT, USER, "hi")

        outcome = await engine.process_message(buttons_graph, PROJECT, USER, reply)

        assert outcome == Outcome.ENDED
        assert texts(gateway) == ["Great"]
        assert f"{KEY}:awaitingButtonResponse" not in store.data

    @pytest.mark.asyncio
    async def test_invalid_replies_are_bounded(self, engine, store, gateway, texts, buttons_graph):
        await engine.process_message(buttons_graph, PROJECT, USER, "hi")

        assert await engine.process_message(buttons_graph, PROJECT, USER, "maybe") == Outcome.SUSPENDED
        assert await engine.process_message(buttons_graph, PROJECT, USER, "perhaps") == Outcome.SUSPENDED
        assert store.data[f"{KEY}:buttonInvalidCount"] == "2"
        assert f"{KEY}:awaitingButtonResponse" in store.data
        assert texts(gateway) == [
            strings.INVALID_BUTTON_RETRY.format(attempts=1, max_attempts=3),
            strings.INVALID_BUTTON_RETRY.format(attempts=2, max_attempts=3),
        ]

        assert await engine.process_message(buttons_graph, PROJECT, USER, "whatever") == Outcome.ENDED
        assert texts(gateway)[-2:] == [strings.INVALID_BUTTON_TERMINATED.format(max_attempts=3), "Goodbye"]
        assert not any(key.startswith(KEY) for key in store.data)

    @pytest.mark.asyncio
    async def test_invalid_limit_without_end_node(self, engine, store, gateway, texts, flow):
        graph = flow.graph(
            [flow.node("s", "start"), flow.node("b", "buttons", buttons=["A", "B"])],
            [flow.edge("s", "b")],
        )
        await engine.process_message(graph, PROJECT, USER, "hi")
        for _ in range(3):
            await engine.process_message(graph, PROJECT, USER, "zzz")

        assert texts(gateway)[-1] == strings.INVALID_BUTTON_TERMINATED.format(max_attempts=3)
        assert not any(key.startswith(KEY) for key in store.data)

    @pytest.mark.asyncio
    async def test_invalid_limit_with_end_node_counts_one_termination(self, engine, buttons_graph, mocker):
        terminations = mocker.patch("flowbot.workflows.engine.session_terminations_counter")
        await engine.process_message(buttons_graph, PROJECT, USER, "hi")
        for _ in range(3):
            await engine.process_message(buttons_graph, PROJECT, USER, "zzz")

        assert terminations.labels.call_args_list == [call(reason="end_node")]

    @pytest.mark.asyncio
    async def test_global_scan_matches_button_outside_session(self, engine, store, gateway, texts, buttons_graph):
        outcome = await engine.process_message(buttons_graph, PROJECT, USER, "no")

        assert outcome == Outcome.ENDED
        assert texts(gateway) == ["Bye"]
        gateway.send_buttons.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_global_scan_can_be_disabled(self, store, gateway, api_client, buttons_graph):
        engine = FlowEngine(store, gateway, api_client, global_button_scan=False)

        await engine.process_message(buttons_graph, PROJECT, USER, "no")

        gateway.send_buttons.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_buttons_capped_at_three(self, engine, gateway, flow):
        graph = flow.graph(
            [flow.node("s", "start"), flow.node("b", "buttons", buttons=["A", "B", "C", "D"])],
            [flow.edge("s", "b")],
        )
        await engine.process_message(graph, PROJECT, USER, "hi")

        assert [b.title for b in gateway.send_buttons.await_args.args[2]] == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_buttons_node_without_buttons_aborts(self, engine, store, gateway, texts, flow):
        graph = flow.graph([flow.node("s", "start"), flow.node("b", "buttons")], [flow.edge("s", "b")])

        assert await engine.process_message(graph, PROJECT, USER, "hi") == Outcome.ABORTED
        assert texts(gateway) == [strings.GENERIC_FAILURE]


class TestApiNode:

    @pytest.fixture
    def graph(self, flow):
        return flow.graph(
            [
                flow.node("s", "start"),
                flow.node("q", "question", question="Order number?", propertyName="order_id"),
                flow.node("a", "api", url="https://api.example.com/orders/{{order_id}}", responseKey="data",
                          responseTemplate="Status: {{status}}"),
                flow.node("after", "message", message="Anything else?"),
            ],
            [flow.edge("s", "q"), flow.edge("q", "a"), flow.edge("a", "after")],
        )

    @pytest.mark.asyncio
    async def test_variable_from_question_is_templated(self, engine, gateway, api_client, texts, graph):
        api_client.request.return_value = {"data": {"status": "shipped"}}

        await engine.process_message(graph, PROJECT, USER, "hi")
        await engine.process_message(graph, PROJECT, USER, "A 12")

        api_client.request.assert_awaited_once_with(
            "GET", "https://api.example.com/orders/A%2012", {}, None, source="api_node"
        )
        assert texts(gateway)[-2:] == ["Status: shipped", "Anything else?"]

    @pytest.mark.asyncio
    async def test_external_failure_uses_fallback_and_continues(self, engine, gateway, api_client, texts, graph):
        api_client.request.side_effect = ExternalAPIError("boom")

        await engine.process_message(graph, PROJECT, USER, "hi")
        await engine.process_message(graph, PROJECT, USER, "A12")

        assert texts(gateway)[-2:] == [strings.API_FALLBACK, "Anything else?"]

    @pytest.mark.asyncio
    async def test_expired_variable_fails_the_call(self, engine, store, gateway, api_client, texts, flow):
        graph = flow.graph(
            [
                flow.node("s", "start"),
                flow.node("q", "question", question="Email?", validation="email", propertyName="email",
                          waitForUserReply=True),
                flow.node("a", "api", url="https://api.example.com/users?email={{email}}", errorMessage="Try later"),
            ],
            [flow.edge("s", "q"), flow.edge("q", "a")],
        )
        await engine.process_message(graph, PROJECT, USER, "hi")
        assert await engine.process_message(graph, PROJECT, USER, "a@b.com") == Outcome.SUSPENDED
        assert store.data[var_key("email")] == "a@b.com"

        store.expire(var_key("email"))
        await engine.process_message(graph, PROJECT, USER, "go")

        api_client.request.assert_not_awaited()
        assert texts(gateway)[-1] == "Try later"

    @pytest.mark.asyncio
    async def test_media_response_mapping(self, engine, gateway, api_client, flow):
        graph = flow.graph(
            [
                flow.node("s", "start"),
                flow.node("a", "api", url="https://api.example.com/cat", responseType="media",
                          mediaUrlField="image.url", captionField="image.caption", saveAs="cat"),
            ],
            [flow.edge("s", "a")],
        )
        api_client.request.return_value = {"image": {"url": "https://cdn.example.com/cat.png", "caption": "Meow"}}

        await engine.process_message(graph, PROJECT, USER, "hi")

        gateway.send_media.assert_awaited_once_with(USER, "https://cdn.example.com/cat.png", "image", "Meow")

    @pytest.mark.asyncio
    async def test_answer_that_breaks_the_url_falls_back_and_moves_on(self, store, gateway, texts, flow):
        requests = []
        client = ExternalApiClient(http_client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: requests.append(request) or httpx.Response(200, json={}))
        ))
        engine = FlowEngine(store, gateway, client, session_ttl=3600, max_steps=20)
        graph = flow.graph(
            [
                flow.node("s", "start"),
                flow.node("q", "question", question="Port?", propertyName="port"),
                flow.node("a", "api", url="http://inventory.internal:{{port}}/status"),
                flow.node("after", "message", message="Anything else?"),
            ],
            [flow.edge("s", "q"), flow.edge("q", "a"), flow.edge("a", "after")],
        )

        await engine.process_message(graph, PROJECT, USER, "hi")
        outcome = await engine.process_message(graph, PROJECT, USER, "abc")

        assert outcome == Outcome.ENDED
        assert requests == []
        assert texts(gateway)[-2:] == [strings.API_FALLBACK, "Anything else?"]
        assert KEY not in store.data


class TestFailures:

    @pytest.mark.asyncio
    async def test_unknown_node_type_terminates(self, engine, store, gateway, texts, flow):
        graph = flow.graph([flow.node("s", "start"), flow.node("x", "carousel")], [flow.edge("s", "x")])
        store.data[f"{KEY}:questionRetries"] = "1"

        assert await engine.process_message(graph, PROJECT, USER, "hi") == Outcome.ABORTED
        assert texts(gateway) == [strings.GENERIC_FAILURE]
        assert not any(key.startswith(KEY) for key in store.data)

    @pytest.mark.asyncio
    async def test_malformed_properties_abort(self, engine, gateway, texts, flow):
        graph = flow.graph([flow.node("s", "start"), flow.node("md", "media")], [flow.edge("s", "md")])

        assert await engine.process_message(graph, PROJECT, USER, "hi") == Outcome.ABORTED
        assert texts(gateway) == [strings.GENERIC_FAILURE]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_retries", [0, -1])
    async def test_non_positive_question_retry_limit_is_rejected(self, engine, store, gateway, texts, flow, max_retries):
        graph = flow.graph(
            [flow.node("s", "start"), flow.node("q", "question", question="Email?", maxRetries=max_retries)],
            [flow.edge("s", "q")],
        )

        assert await engine.process_message(graph, PROJECT, USER, "hi") == Outcome.ABORTED
        assert texts(gateway) == [strings.GENERIC_FAILURE]
        assert KEY not in store.data

    def test_every_node_type_has_a_handler(self, engine):
        assert set(engine._handlers) == set(NodeType)
