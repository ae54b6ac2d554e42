import pytest

from chatcanvas.utils.replicate_util import ReplicateError, ReplicateProvider


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code
        self.text = str(payload)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, post_response, poll_responses=()):
        self.post_response = post_response
        self.poll_responses = list(poll_responses)
        self.posts = []
        self.gets = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append({"url": url, "json": json, "headers": headers})
        return self.post_response

    def get(self, url, headers=None, timeout=None):
        self.gets.append(url)
        return self.poll_responses.pop(0)


def make_provider(session, poll_attempts=3):
    return ReplicateProvider(
        api_token="r8-test",
        model="black-forest-labs/flux-kontext-pro",
        poll_interval=0,
        poll_attempts=poll_attempts,
        session=session,
    )


def test_synchronous_prediction_returns_output():
    session = FakeSession(FakeResponse({"id": "p1", "status": "succeeded", "output": "https://replicate.delivery/a.jpg"}))

    result = make_provider(session).generate("a cat astronaut")

    assert result.output_url == "https://replicate.delivery/a.jpg"
    assert result.prediction_id == "p1"
    assert result.error is None
    request = session.posts[0]
    assert request["url"].endswith("/models/black-forest-labs/flux-kontext-pro/predictions")
    assert request["headers"]["Prefer"] == "wait"
    assert request["headers"]["Authorization"] == "Token r8-test"
    assert "input_image" not in request["json"]["input"]


def test_edit_request_sends_source_image():
    session = FakeSession(FakeResponse({"id": "p1", "status": "succeeded", "output": ["https://replicate.delivery/a.jpg"]}))

    result = make_provider(session).generate("remove background", "https://res.cloudinary.com/demo/cat.jpg")

    model_input = session.posts[0]["json"]["input"]
    assert model_input["input_image"] == "https://res.cloudinary.com/demo/cat.jpg"
    assert model_input["aspect_ratio"] == "match_input_image"
    assert model_input["output_format"] == "jpg"
    assert result.output_url == "https://replicate.delivery/a.jpg"


def test_pending_prediction_is_polled():
    pending = {"id": "p2", "status": "processing", "urls": {"get": "https://api.replicate.com/v1/predictions/p2"}}
    session = FakeSession(
        FakeResponse(pending),
        [
            FakeResponse(pending),
            FakeResponse({"id": "p2", "status": "succeeded", "output": ["https://replicate.delivery/b.jpg"]}),
        ],
    )

    result = make_provider(session).generate("a cat astronaut")

    assert result.output_url == "https://replicate.delivery/b.jpg"
    assert session.gets == ["https://api.replicate.com/v1/predictions/p2"] * 2


def test_polling_gives_up_after_attempts():
    pending = {"id": "p3", "status": "starting", "urls": {"get": "https://api.replicate.com/v1/predictions/p3"}}
    session = FakeSession(FakeResponse(pending), [FakeResponse(pending)] * 2)

    with pytest.raises(ReplicateError):
        make_provider(session, poll_attempts=2).generate("a cat astronaut")


def test_http_error_raises():
    session = FakeSession(FakeResponse({"detail": "Invalid token"}, status_code=401))
    with pytest.raises(ReplicateError) as excinfo:
        make_provider(session).generate("a cat astronaut")
    assert "401" in str(excinfo.value)


def test_failed_and_canceled_predictions_report_errors():
    failed = ReplicateProvider.to_result({"id": "p4", "status": "failed", "error": "NSFW content detected"})
    assert failed.error == "NSFW content detected"
    assert failed.output_url is None

    canceled = ReplicateProvider.to_result({"id": "p5", "status": "canceled"})
    assert canceled.error == "Prediction was canceled"


def test_missing_token_rejected():
    with pytest.raises(ReplicateError):
        ReplicateProvider(api_token=None, model="black-forest-labs/flux-kontext-pro")
