from salesflow.actions import render


def test_placeholders_are_rendered_from_context():
    variables = {"customer": {"name": "Ann"}, "order_id": "o-1", "total": 42.5}
    assert render("Hi {{customer.name}}, order {{ order_id }}", variables) == (
        "Hi Ann, order o-1"
    )
    assert render("Total: {{total}}", variables) == "Total: 42.5"


def test_single_placeholder_keeps_value_type():
    variables = {"total": 42.5, "lines": [1, 2]}
    assert render("{{total}}", variables) == 42.5
    assert render("{{lines}}", variables) == [1, 2]


def test_unresolved_placeholders_stay_verbatim():
    assert render("Hello {{customer.name}}", {}) == "Hello {{customer.name}}"
    assert render("{{missing}}", {}) == "{{missing}}"


def test_nested_structures_are_rendered():
    config = {"json": {"id": "{{order_id}}", "tags": ["{{tag}}", "static"]}, "retries": 3}
    rendered = render(config, {"order_id": "o-9", "tag": "vip"})
    assert rendered == {"json": {"id": "o-9", "tags": ["vip", "static"]}, "retries": 3}
