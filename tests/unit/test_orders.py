"""
Unit tests for order parsing and the three-way OrderPublisher.
"""

import pytest

from scenarios.orders import Order, OrderPublisher, parse_order_input
from scenarios.topologies import ORDER_QUEUE, declare_ecommerce, declare_fulfillment
from tests.helpers import make_order


@pytest.mark.unit
class TestParseOrderInput:

    def test_valid_line(self):
        order = parse_order_input("user123:laptop:999.99:US:express", order_id="order_1")
        assert order == Order("order_1", "user123", "laptop", 999.99, "US", "express")

    def test_generated_ids_are_unique(self):
        first = parse_order_input("u:p:1:EU:standard")
        second = parse_order_input("u:p:1:EU:standard")
        assert first.id != second.id
        assert first.id.startswith("order_")

    @pytest.mark.parametrize("line", [
        "user123:laptop:999.99:US",
        "user123:laptop:999.99:US:express:extra",
        "user123::999.99:US:express",
        "",
    ])
    def test_wrong_field_count_raises(self, line):
        with pytest.raises(ValueError, match="Expected"):
            parse_order_input(line)

    def test_non_numeric_amount_raises(self):
        with pytest.raises(ValueError, match="Invalid amount"):
            parse_order_input("user123:laptop:cheap:US:express")

    def test_custom_priority_passes_through(self):
        assert parse_order_input("user123:laptop:10:US:overnight").priority == "overnight"

    def test_empty_priority_raises(self):
        with pytest.raises(ValueError, match="Expected user_id:product:amount:region:priority"):
            parse_order_input("user123:laptop:10:US:")

    def test_from_dict_requires_every_field(self):
        with pytest.raises(ValueError, match="missing fields"):
            Order.from_dict({"id": "x", "user_id": "u"})


@pytest.mark.unit
class TestOrderPublisher:

    def test_order_reaches_all_three_channels(self, broker):
        declare_ecommerce(broker)
        notify_queue = broker.declare_queue("")
        broker.bind(notify_queue, "order_notifications")
        declare_fulfillment(broker, "EU")

        routed = OrderPublisher(broker).place(make_order(region="EU"))

        assert routed["processing"] == {ORDER_QUEUE}
        assert routed["notifications"] == {notify_queue}
        assert routed["fulfillment"] == {"fulfillment_EU"}

    def test_work_queue_copy_is_persistent_json(self, broker):
        declare_ecommerce(broker)
        order = make_order()
        OrderPublisher(broker).place(order)
        (message,) = broker.peek(ORDER_QUEUE)
        assert message.persistent is True
        assert message.content_type == "application/json"
        assert Order.from_json(message.body) == order

    def test_region_without_fulfillment_centre_is_dropped(self, broker):
        declare_ecommerce(broker)
        declare_fulfillment(broker, "US")
        publisher = OrderPublisher(broker)
        routed = publisher.place(make_order(region="MARS"))
        assert routed["fulfillment"] == set()
        assert broker.queue_depth("fulfillment_US") == 0
        assert publisher.placed_count == 1
