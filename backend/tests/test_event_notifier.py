from inventory_sync.services.event_notifier import CONFIG_UPDATED, MANUAL_COMPLETED, EventNotifier


def test_publish_reaches_subscribers_in_order():
    notifier = EventNotifier()
    received = []
    notifier.subscribe(MANUAL_COMPLETED, lambda event, payload: received.append(("a", payload)))
    notifier.subscribe(MANUAL_COMPLETED, lambda event, payload: received.append(("b", payload)))

    delivered = notifier.publish(MANUAL_COMPLETED, {"n": 1})
    notifier.publish(MANUAL_COMPLETED, {"n": 2})

    assert delivered == 2
    assert received == [("a", {"n": 1}), ("b", {"n": 1}), ("a", {"n": 2}), ("b", {"n": 2})]


def test_failing_handler_does_not_stop_fan_out():
    notifier = EventNotifier()
    received = []

    def broken(event, payload):
        raise RuntimeError("listener crashed")

    notifier.subscribe(CONFIG_UPDATED, broken)
    notifier.subscribe(CONFIG_UPDATED, lambda event, payload: received.append(payload))

    delivered = notifier.publish(CONFIG_UPDATED, {"key": "inventory_sync_interval"})

    assert delivered == 1
    assert received == [{"key": "inventory_sync_interval"}]


def test_unsubscribe_stops_delivery():
    notifier = EventNotifier()
    received = []
    unsubscribe = notifier.subscribe(MANUAL_COMPLETED, lambda event, payload: received.append(payload))

    unsubscribe()
    unsubscribe()
    notifier.publish(MANUAL_COMPLETED, "ignored")

    assert received == []
    assert notifier.subscriber_count(MANUAL_COMPLETED) == 0


def test_channels_are_independent():
    notifier = EventNotifier()
    received = []
    notifier.subscribe(CONFIG_UPDATED, lambda event, payload: received.append(event))

    assert notifier.publish(MANUAL_COMPLETED, {}) == 0
    assert received == []
