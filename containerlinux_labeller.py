"""
Tiny node controller labelling Container Linux nodes.

Nodes are watched directly instead of through an informer, so there is no cache, resync or rate limiting. Node objects
change far less often than pods, which keeps this simple approach good enough.
"""
import argparse
import enum
import logging
import os
import signal
import sys
import threading

from kubernetes import client, config, watch
from kubernetes.client.exceptions import OpenApiException
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

LABEL = 'kubermatic.io/uses-container-linux'
LABEL_VALUE = 'true'
OS_MATCH = 'Container Linux'

logger = logging.getLogger('containerlinux-labeller')


class LabellerError(Exception):
    pass


class ConfigResolutionError(LabellerError):
    pass


class SubscriptionError(LabellerError):
    pass


class ReconcileError(LabellerError):

    def __init__(self, node_name, message):
        super().__init__('updating node %s failed: %s' % (node_name, message))
        self.node_name = node_name


class EventType(enum.Enum):
    ADDED = 'ADDED'
    MODIFIED = 'MODIFIED'
    DELETED = 'DELETED'
    ERROR = 'ERROR'
    BOOKMARK = 'BOOKMARK'


class State(enum.Enum):
    INITIALIZING = 'Initializing'
    WATCHING = 'Watching'
    SHUTTING_DOWN = 'ShuttingDown'
    STOPPED = 'Stopped'


class Subscription:
    """
    Owns the node watch. The consumer thread reads from it, the signal handler stops it.
    """

    def __init__(self, api, watcher=None):
        self.api = api
        self.watcher = watcher if watcher is not None else watch.Watch()
        self.stream = None
        self._stopped = False
        self._lock = threading.Lock()

    @property
    def stopped(self):
        return self._stopped

    def open(self):
        with self._lock:
            if self._stopped:
                raise SubscriptionError('node subscription was already stopped')
            if self.stream is not None:
                raise SubscriptionError('node subscription is already open')
            # the watch generator is lazy, probe once so setup errors show up here
            try:
                self.api.list_node(limit=1)
            except (ApiException, HTTPError) as e:
                raise SubscriptionError('cannot watch nodes: %s' % e) from e
            # no timeout_seconds: the library resumes from the last resource version instead of replaying every node
            self.stream = self.watcher.stream(self.api.list_node)
        return self.stream

    def stop(self):
        with self._lock:
            if self._stopped:
                return False
            self._stopped = True
            self.watcher.stop()
        return True


class NodeLabeller:

    def __init__(self, api, exit_on_error=True, watcher=None):
        self.api = api
        self.exit_on_error = exit_on_error
        self.subscription = Subscription(api, watcher=watcher)
        self.state = State.INITIALIZING
        self.thread = None
        self.stop_event = None

    def _transition(self, state):
        logger.debug('controller state %s -> %s', self.state.value, state.value)
        self.state = state

    def run(self):
        logger.info('Starting node label controller, watching node events...')
        self.subscription.open()
        self.thread = threading.Thread(target=self.watch_nodes, name='node-watcher', daemon=True)
        self.thread.start()
        self._transition(State.WATCHING)
        return self.thread

    def watch_nodes(self):
        try:
            for event in self.subscription.stream:
                if self.subscription.stopped:
                    break
                self.dispatch(event)
        except (ApiException, HTTPError) as e:
            if self.subscription.stopped:
                return
            self.fail(SubscriptionError('watching nodes failed: %s' % e))
        except Exception as e:
            self.fail(SubscriptionError('node watcher crashed: %r' % e))

    def dispatch(self, event):
        node = event.get('object')
        if node is None:
            return
        try:
            event_type = EventType(event.get('type'))
        except ValueError:
            logger.debug('ignoring unknown event type %s', event.get('type'))
            return
        # MODIFIED fires on every heartbeat and the OS of a node does not change after provisioning
        if event_type is EventType.ADDED:
            try:
                self.handle_added_node(node)
            except ReconcileError as e:
                self.fail(e)

    def handle_added_node(self, node):
        name = node.metadata.name
        logger.info('handling node %s', name)
        labels = node.metadata.labels
        if labels and LABEL in labels:
            logger.info('node %s is already labeled with %s', name, LABEL)
            return False
        operating_system = ''
        if node.status is not None and node.status.node_info is not None:
            operating_system = node.status.node_info.os_image or ''
        if OS_MATCH not in operating_system:
            logger.info('node %s is running %s', name, operating_system)
            return False
        if self.subscription.stopped:
            logger.info('node watch is closed, not labeling node %s', name)
            return False
        logger.info('node %s is running %s, labeling...', name, operating_system)
        if labels is None:
            labels = {}
            node.metadata.labels = labels
        labels[LABEL] = LABEL_VALUE
        try:
            self.api.replace_node(name, node)
        except (OpenApiException, HTTPError) as e:
            raise ReconcileError(name, e) from e
        return True

    def fail(self, err):
        if not self.exit_on_error:
            logger.error('%s, continuing', err)
            return
        logger.error('%s, exiting', err)
        # a worker thread cannot raise SystemExit into the main thread
        os._exit(1)

    def handle_signal(self, signum, frame):
        if self.state in (State.SHUTTING_DOWN, State.STOPPED):
            logger.info('Received signal %d, already shutting down', signum)
            return
        logger.info('Received signal %d, closing node watch', signum)
        self._transition(State.SHUTTING_DOWN)
        self.subscription.stop()
        self._transition(State.STOPPED)
        if self.stop_event is not None:
            self.stop_event.set()

    def setup_close_handler(self, stop=None):
        self.stop_event = stop if stop is not None else threading.Event()
        signal.signal(signal.SIGINT, self.handle_signal)
        signal.signal(signal.SIGTERM, self.handle_signal)
        return self.stop_event


def home_dir():
    return os.environ.get('HOME') or os.environ.get('USERPROFILE', '')


def default_kubeconfig():
    home = home_dir()
    return os.path.join(home, '.kube', 'config') if home else ''


def load_config(kubeconfig=None):
    try:
        config.load_incluster_config()
        return
    except config.ConfigException:
        logger.info('in cluster config failed, trying from local')
    try:
        config.load_kube_config(config_file=kubeconfig or None)
    except (config.ConfigException, OSError) as e:
        raise ConfigResolutionError('cannot load kubeconfig %s: %s' % (kubeconfig or 'default', e)) from e


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog='containerlinux-labeller',
                                     description='Label Container Linux nodes with %s=%s' % (LABEL, LABEL_VALUE))
    home = default_kubeconfig()
    parser.add_argument('--kubeconfig', default=home,
                        help='(optional) absolute path to the kubeconfig file' if home else
                        'absolute path to the kubeconfig file')
    parser.add_argument('--debug', action='store_true', help='enable debug logging')
    return parser.parse_args(argv)


def setup_logging(debug=False):
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO,
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    if not debug:
        logging.getLogger('urllib3').setLevel(logging.WARNING)
        logging.getLogger('kubernetes').setLevel(logging.WARNING)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.debug)
    try:
        load_config(args.kubeconfig)
        labeller = NodeLabeller(client.CoreV1Api())
        labeller.run()
    except LabellerError as e:
        logger.error('%s', e)
        return 1
    stop = labeller.setup_close_handler()
    stop.wait()
    logger.info('Stopping controller')
    return 0


if __name__ == '__main__':
    sys.exit(main())
