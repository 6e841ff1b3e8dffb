from vgmanager.services.object_registry import ObjectRegistry


class Group:
    pass


class Volume:
    pass


def test_publish_notifies_typed_listeners():
    registry = ObjectRegistry()
    seen = []
    registry.connect(Group, lambda path, entity: seen.append(path))

    registry.publish("/lvm/vg0", Group())
    registry.publish("/lvm/vg0/root", Volume())

    assert seen == ["/lvm/vg0"]
    assert registry.find("/lvm/vg0/root", Volume) is not None
    assert registry.find("/lvm/vg0/root", Group) is None


def test_disconnect_stops_notifications():
    registry = ObjectRegistry()
    seen = []
    handler_id = registry.connect(Group, lambda path, entity: seen.append(path))

    assert registry.disconnect(handler_id)
    assert not registry.disconnect(handler_id)
    registry.publish("/lvm/vg0", Group())

    assert seen == []
    assert registry.listener_count() == 0


def test_listener_may_disconnect_another_during_publish():
    registry = ObjectRegistry()
    seen = []
    second = None

    def first(path, entity):
        seen.append("first")
        registry.disconnect(second)

    registry.connect(Group, first)
    second = registry.connect(Group, lambda path, entity: seen.append("second"))

    registry.publish("/lvm/vg0", Group())

    assert seen == ["first"]


def test_unpublish_only_matching_entity():
    registry = ObjectRegistry()
    old, new = Group(), Group()
    registry.publish("/lvm/vg0", old)
    registry.publish("/lvm/vg0", new)

    assert not registry.unpublish("/lvm/vg0", old)
    assert registry.unpublish("/lvm/vg0", new)
    assert not registry.is_published("/lvm/vg0")
    assert registry.objects_of_type(Group) == []
