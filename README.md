# distlab

Building blocks for experimenting with distributed systems, in plain Python
with no third-party dependencies. The MapReduce parts use Unix-domain
sockets and so need a POSIX system.

- **`distlab.codec`**: `LabEncoder` and `LabDecoder` write and read values
  (numbers, strings, bytes, lists, tuples, sets, dicts, enums and
  dataclasses) as tagged JSON, one value per line. Dataclass fields whose
  names start with an underscore are never transmitted, and the codec logs
  an error the first time it sees such a type. Decoding into an instance
  that already holds non-default values is logged as a warning.
  `error_count()` reports how many such problems have been seen. Dataclasses
  and enums that are not reachable from the type given to `decode()` must be
  made known with `register()` or `register_name()`.
- **`distlab.labrpc`**: a simulated in-process network. A `Network` holds
  client end-points (`ClientEnd`) and named `Server`s, each carrying one or
  more `Service`s; a service exposes the public one-argument methods of an
  object as handlers, and a handler returns the reply. Arguments and replies
  always travel encoded. Setting `network.reliable = False` makes the
  network drop and delay messages; `long_delays` and `long_reordering` add
  longer pauses. A call with no reply raises `RPCFailed`.
- **`distlab.kvmodel`**: the request and reply types of a versioned
  key/value service (`PutArgs`, `PutReply`, `GetArgs`, `GetReply`, `Err`)
  and a model of it (`partition`, `init_state`, `step`,
  `describe_operation`) over recorded `Operation`s made of `KvInput` and
  `KvOutput`.
- **`distlab.mrprotocol`**, **`distlab.coordinator`**, **`distlab.worker`**:
  a MapReduce framework. A `Coordinator` hands out map and reduce tasks to
  workers over a Unix-domain socket and hands a task out again if a worker
  has held it for ten seconds or more without finishing.
- **`distlab.apps`**: MapReduce applications, looked up by name with
  `load_app()`: `wc` (word count), `indexer`, and `crash`, `nocrash`,
  `early_exit`, `jobcount`, `mtiming`, `rtiming`, which exercise crash
  recovery, task reassignment and parallelism.
- **`distlab.sequential`**: a one-process MapReduce run, useful as a
  reference for the distributed one.

## Installing

```
pip install .
```

With the test dependencies:

```
pip install ".[test]"
pytest
```

## Running MapReduce

The reference run reads every input file, applies the application's map
function, sorts the intermediate pairs by key, and writes one line per key
to `mr-out-0`:

```
mrsequential wc pg-*.txt
```

The application may be named as `wc`, `wc.so` or with a directory in front;
only the base name counts.

For the distributed run, start a coordinator with the input files; it makes
one map task per file and ten reduce tasks:

```
mrcoordinator pg-*.txt
```

then start as many workers as you like, in other terminals, in the same
directory, naming the application to run:

```
mrworker wc
```

Map task *X* writes its pairs for reduce task *Y* to `mr-X-Y`, one JSON
object per line; reduce task *Y* writes `mr-out-Y`, one `key value` line
per key. The coordinator exits once every task has completed, and workers
exit when told there is nothing left to do.

Compare the two results with:

```
cat mr-out-* | sort > mr-dist.txt
sort mr-out-0 > mr-seq.txt
```

(running the sequential version in a separate directory, since both write
`mr-out-0`).

The coordinator's socket path is given by
`distlab.mrprotocol.coordinator_socket()` and is derived from the current
user id, so each user has their own.

## Using the simulated network

```python
from distlab.labrpc import Network, Server, Service, RPCFailed

class Echo:
    def Shout(self, text):
        return text.upper()

net = Network()
end = net.make_end("client-1")
server = Server()
server.add_service(Service(Echo()))
net.add_server("server-1", server)
net.connect("client-1", "server-1")
net.enable("client-1", True)

try:
    print(end.call("Echo.Shout", "hello"))
except RPCFailed:
    print("no reply")
finally:
    net.cleanup()
```

A new end-point is disabled and unconnected; calls on it fail until it is
connected and enabled. `net.delete_server(name)` takes a server off the
network, and calls waiting on it fail. `net.get_count(servername)` reports
how many requests a server has received, and `net.total_count()` and
`net.total_bytes()` report totals for the whole network.

## What the package does not do

There is no key/value server, clerk or replicated service here:
`distlab.kvmodel` supplies the message types and the model of one key's
behaviour, but no search that checks a whole history for linearizability.
The MapReduce coordinator keeps its state in memory only and does not
survive a restart.