import json

import pytest

from voice_listing.extraction import backends
from voice_listing.extraction.backends import OllamaConfig, OllamaGenerator, StructuredGenerator
from voice_listing.extraction.model import (
    SOURCE_MODEL,
    SOURCE_PATTERN,
    ModelExtractor,
    listing_schema,
    parse_model_output,
)
from voice_listing.extraction.patterns import PatternExtractor

SAMPLES = [
    "Id: SKU-1, Brand: Levi's, Price: 45",
    "Title: Robe d'été, Color: rouge, Is unisex: no, Size: 38",
    "",
    "rien d'utile ici",
]


class _FixedGenerator(StructuredGenerator):
    name = "fixed"

    def __init__(self, output, available=True):
        self.output = output
        self.available = available
        self.prompts = []

    def is_available(self):
        return self.available

    def generate(self, prompt, schema):
        self.prompts.append(prompt)
        return self.output


class _ExplodingGenerator(StructuredGenerator):
    name = "exploding"

    def generate(self, prompt, schema):
        raise ConnectionError("backend down")


@pytest.mark.parametrize("text", SAMPLES)
@pytest.mark.parametrize(
    "generator",
    [None, _FixedGenerator("{}", available=False), _ExplodingGenerator(), _FixedGenerator("not json at all")],
)
def test_fallback_matches_pattern_extractor(text, generator):
    extractor = ModelExtractor(generator)
    assert extractor.extract(text) == PatternExtractor().extract(text)
    assert extractor.last_source == SOURCE_PATTERN


def test_model_output_is_used_when_valid():
    payload = {
        "id": "A-7",
        "title": "Veste",
        "brand": "",
        "color": "noir",
        "item_description": "",
        "is_unisex": True,
        "measurement_length": "70,5",
        "measurement_width": 0,
        "price": 30,
        "size": "M",
        "status": "bon état",
    }
    gen = _FixedGenerator(json.dumps(payload))
    extractor = ModelExtractor(gen)
    fields = extractor.extract("une veste noire taille M")
    assert extractor.last_source == SOURCE_MODEL
    assert fields.id == "A-7"
    assert fields.brand is None
    assert fields.is_unisex is True
    assert fields.measurement_length == 70.5
    assert fields.price == 30.0
    assert "une veste noire taille M" in gen.prompts[0]


def test_fenced_json_is_recovered():
    raw = 'Here you go:\n```json\n{"brand": "Zara", "price": 12}\n```'
    assert parse_model_output(raw) == {"brand": "Zara", "price": 12}
    assert parse_model_output("[1, 2]") is None
    assert parse_model_output("") is None


def test_schema_lists_every_field():
    schema = listing_schema()
    assert schema["properties"]["price"]["type"] == "number"
    assert schema["properties"]["is_unisex"]["type"] == "boolean"
    assert schema["properties"]["title"]["type"] == "string"
    assert len(schema["required"]) == 11


class _Resp:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body
        self.text = json.dumps(body)

    def json(self):
        return self._body

    def raise_for_status(self):
        raise RuntimeError(f"HTTP {self.status_code}")


def test_ollama_generator_posts_schema(monkeypatch):
    calls = {}

    def fake_post(url, json=None, timeout=None):
        calls["url"] = url
        calls["payload"] = json
        return _Resp(200, {"message": {"role": "assistant", "content": '{"brand": "Levi\'s"}'}})

    monkeypatch.setattr(backends.requests, "post", fake_post)
    gen = OllamaGenerator(OllamaConfig(url="http://ollama:11434/", model="m"))
    extractor = ModelExtractor(gen)
    fields = extractor.extract("Levi's jean")

    assert calls["url"] == "http://ollama:11434/api/chat"
    assert calls["payload"]["stream"] is False
    assert calls["payload"]["format"]["type"] == "object"
    assert fields.brand == "Levi's"
    assert extractor.last_source == SOURCE_MODEL


def test_ollama_http_error_falls_back(monkeypatch):
    monkeypatch.setattr(backends.requests, "post", lambda *a, **k: _Resp(500, {"error": "boom"}))
    extractor = ModelExtractor(OllamaGenerator(OllamaConfig(url="http://ollama:11434", model="m")))
    fields = extractor.extract("Brand: Zara")
    assert fields.brand == "Zara"
    assert extractor.last_source == SOURCE_PATTERN
