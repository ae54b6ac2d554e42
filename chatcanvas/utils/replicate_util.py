import time
from dataclasses import dataclass
from typing import Optional

import requests

from chatcanvas.utils.logging_util import configure_logging

logger = configure_logging()

REPLICATE_API_BASE = "https://api.replicate.com/v1"
TERMINAL_PREDICTION_STATES = ("succeeded", "failed", "canceled")
PENDING_PREDICTION_STATES = ("starting", "processing")


class ReplicateError(Exception):
    pass


@dataclass
class PredictionResult:
    prediction_id: Optional[str]
    output_url: Optional[str]
    error: Optional[str]
    status: Optional[str] = None


def first_output(output):
    if isinstance(output, (list, tuple)):
        return output[0] if output else None
    return output or None


class ReplicateProvider:
    """Replicate predictions client for instruction-driven image models.

    Requests run in synchronous mode (``Prefer: wait``) so a single POST
    normally returns the finished prediction. When Replicate hands back a
    prediction that is still starting or processing, the client polls its
    ``urls.get`` endpoint a bounded number of times and raises
    ``ReplicateError`` once the attempts run out.
    """

    name = "replicate"

    def __init__(self, api_token, model, timeout=120.0, poll_interval=2.0, poll_attempts=60, session=None):
        if not api_token:
            raise ReplicateError("Replicate API token not configured")
        self.api_token = api_token
        self.model = model
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config):
        return cls(
            api_token=config.get("REPLICATE_API_TOKEN"),
            model=config.get("REPLICATE_MODEL"),
            timeout=config.get("REPLICATE_TIMEOUT", 120.0),
            poll_interval=config.get("REPLICATE_POLL_INTERVAL", 2.0),
            poll_attempts=config.get("REPLICATE_POLL_ATTEMPTS", 60),
        )

    @property
    def headers(self):
        return {
            "Authorization": f"Token {self.api_token}",
            "Content-Type": "application/json",
            "Prefer": "wait",
        }

    def build_input(self, prompt, image_url=None):
        model_input = {
            "prompt": prompt,
            "guidance_scale": 3.5,
            "num_inference_steps": 28,
            "enable_safety_checker": True,
            "output_format": "jpg",
            "safety_tolerance": 2,
        }
        if image_url:
            model_input["input_image"] = image_url
            model_input["aspect_ratio"] = "match_input_image"
        return model_input

    def generate(self, prompt, image_url=None):
        endpoint = f"{REPLICATE_API_BASE}/models/{self.model}/predictions"
        response = self.session.post(
            endpoint, json={"input": self.build_input(prompt, image_url)}, headers=self.headers, timeout=self.timeout
        )
        if not response.ok:
            raise ReplicateError(f"Replicate API error: {response.status_code} {response.text}")

        prediction = response.json()
        logger.info(f"Replicate prediction {prediction.get('id')} returned status {prediction.get('status')}")
        if prediction.get("status") in PENDING_PREDICTION_STATES and not prediction.get("error"):
            prediction = self.wait_for_prediction(prediction)
        return self.to_result(prediction)

    def wait_for_prediction(self, prediction):
        poll_url = (prediction.get("urls") or {}).get("get")
        if not poll_url:
            poll_url = f"{REPLICATE_API_BASE}/predictions/{prediction.get('id')}"

        for attempt in range(1, self.poll_attempts + 1):
            time.sleep(self.poll_interval)
            response = self.session.get(poll_url, headers=self.headers, timeout=self.timeout)
            if not response.ok:
                raise ReplicateError(f"Replicate API error: {response.status_code} {response.text}")
            prediction = response.json()
            if prediction.get("status") in TERMINAL_PREDICTION_STATES:
                logger.info(f"Prediction {prediction.get('id')} finished after {attempt} polls")
                return prediction

        raise ReplicateError(
            f"Prediction {prediction.get('id')} did not finish after {self.poll_attempts} status checks"
        )

    @staticmethod
    def to_result(prediction):
        error = prediction.get("error")
        if not error and prediction.get("status") == "canceled":
            error = "Prediction was canceled"
        return PredictionResult(
            prediction_id=prediction.get("id"),
            output_url=first_output(prediction.get("output")),
            error=str(error) if error else None,
            status=prediction.get("status"),
        )
