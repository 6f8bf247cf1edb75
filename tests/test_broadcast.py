from media_server.broadcast import ProgressBroadcaster


def event(job_id, progress=0, status='processing'):
    return {'id': job_id, 'status': status, 'progress': progress}


def test_unscoped_subscriber_sees_every_job():
    broadcaster = ProgressBroadcaster()
    with broadcaster.subscribe() as subscription:
        broadcaster.publish(event('a'))
        broadcaster.publish(event('b'))
        assert subscription.get(timeout=0.1)['id'] == 'a'
        assert subscription.get(timeout=0.1)['id'] == 'b'


def test_scoped_subscriber_sees_only_its_job():
    broadcaster = ProgressBroadcaster()
    with broadcaster.subscribe('b') as subscription:
        broadcaster.publish(event('a'))
        broadcaster.publish(event('b', 10))
        assert subscription.get(timeout=0.1) == event('b', 10)
        assert subscription.get(timeout=0.01) is None


def test_publish_without_subscribers_is_fine():
    ProgressBroadcaster().publish(event('a'))


def test_slow_subscriber_drops_oldest():
    broadcaster = ProgressBroadcaster(queue_size=3)
    subscription = broadcaster.subscribe()
    for pct in range(10):
        broadcaster.publish(event('a', pct))
    received = [subscription.get(timeout=0.1)['progress'] for _ in range(3)]
    assert received == [7, 8, 9]


def test_close_unsubscribes():
    broadcaster = ProgressBroadcaster()
    subscription = broadcaster.subscribe()
    assert broadcaster.subscriber_count == 1
    subscription.close()
    subscription.close()
    assert broadcaster.subscriber_count == 0
    broadcaster.publish(event('a'))
    assert subscription.get(timeout=0.01) is None
