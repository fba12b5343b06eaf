from types import SimpleNamespace


def make_node(name, os_image, labels=None):
    node_info = SimpleNamespace(os_image=os_image)
    return SimpleNamespace(metadata=SimpleNamespace(name=name, labels=labels),
                           status=SimpleNamespace(node_info=node_info))


def make_event(event_type, node):
    return {'type': event_type, 'object': node}
