from autoexit.utils.events import EXIT_CONFIRMED, EventChannel


async def test_publish_reaches_sync_and_async_subscribers():
    channel = EventChannel()
    got = []

    def sync_cb(topic, payload):
        got.append(("sync", topic, payload["position_id"]))

    async def async_cb(topic, payload):
        got.append(("async", topic, payload["position_id"]))

    channel.subscribe(sync_cb)
    channel.subscribe(async_cb)
    channel.subscribe(sync_cb)
    channel.publish(EXIT_CONFIRMED, position_id="p1")
    await channel.drain()
    assert sorted(got) == [("async", EXIT_CONFIRMED, "p1"), ("sync", EXIT_CONFIRMED, "p1")]


async def test_failing_subscribers_do_not_reach_the_publisher():
    channel = EventChannel()
    got = []

    def bad(topic, payload):
        raise RuntimeError("listener bug")

    async def bad_async(topic, payload):
        raise RuntimeError("async listener bug")

    channel.subscribe(bad)
    channel.subscribe(bad_async)
    channel.subscribe(lambda topic, payload: got.append(topic))
    channel.publish("stop_updated", position_id="p1")
    await channel.drain()
    assert got == ["stop_updated"]


def test_publish_without_subscribers_and_unsubscribe():
    channel = EventChannel()
    channel.publish("exit_failed")
    got = []
    cb = lambda topic, payload: got.append(topic)  # noqa: E731
    channel.subscribe(cb)
    channel.unsubscribe(cb)
    channel.unsubscribe(cb)
    channel.publish("exit_failed")
    assert got == []
