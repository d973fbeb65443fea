from events import ADMIN, MemoryPublisher, safe_publish, user_room


class BrokenPublisher:
    async def publish(self, room, event, payload):
        raise ConnectionError("socket closed")


async def test_memory_publisher_filters_by_room():
    publisher = MemoryPublisher()
    await safe_publish(publisher, ADMIN, "order-changed", {"action": "created"})
    await safe_publish(publisher, user_room("Asha@Example.com"), "order-changed", {"action": "updated"})
    assert publisher.named("order-changed", room="user-asha@example.com") == [{"action": "updated"}]
    assert len(publisher.named("order-changed")) == 2


async def test_failed_publish_does_not_raise():
    await safe_publish(BrokenPublisher(), ADMIN, "product-changed", {})
