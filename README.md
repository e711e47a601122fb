# tinydfs

tinydfs is a small distributed file store built on gRPC. It has three parts:

- a **master node**. It tracks which data nodes are alive and which files they hold, and it schedules replication.
- **data nodes**. They store uploaded files on local disk, send the master a heartbeat every second, and copy files to their peers when the master tells them to.
- an **interactive client**. It uploads files in 1 MB chunks and downloads them again.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Running a cluster

### 1. Start the master

```
tinydfs-master
```

The master listens on port 50060 for clients and on port 50061 for data nodes. Every two seconds it marks as dead any data node whose last heartbeat is two or more seconds old. Every ten seconds it checks each file that has at least one live copy and fewer than three. For each such file it picks one of the live holders at random and asks it to copy the file to the next two nodes in the ring, skipping nodes that are dead or already hold the file.

When a data node reports a file that the master has not seen before, the master sends a notification to the client named in the call's `client-ip` and `client-port` metadata. It then tells the reporting node to replicate the file in the same way.

### 2. Start one or more data nodes

Each data node reads a JSON configuration file that names its three listen ports and its ID. The keys are matched case-insensitively:

```json
{
  "MasterNodePort": ":7001",
  "ClientNodePort": ":7002",
  "DataNodePort": ":7003",
  "ID": 0
}
```

```
tinydfs-datanode node0.json
```

The node looks up the machine's first non-loopback IPv4 address. An `IP` key in the configuration overrides that address. Files are stored under `./uploaded_<ip>_<client port>/`. The node sends a heartbeat to the master at `localhost:50061` every second, and the first heartbeat registers it.

The master numbers data nodes in the order they register, while a node reports its uploads under its configured ID. Give the nodes IDs that match the order in which they first contact the master.

### 3. Use the client

```
tinydfs-client
```

The client starts a notification server on `localhost:12345`. The master reports finished uploads there, and the client prints them. It then asks for a command:

- `u`: upload. Enter a path. The file is sent in chunks, with a progress bar, to a live data node chosen at random by the master.
- `d`: download. Enter a file name. The file is fetched from a randomly chosen live node that holds it and saved under `./downloads/`.
- `e`: exit.

If a transfer fails, the client prints the error and exits with status 1.

## Using it as a library

- `tinydfs.master.MasterNode` holds the file and machine tables and implements the master's calls. `tinydfs.master.serve(master, addresses)` starts a gRPC server for it, and `MasterNode.run_background(stop_event)` starts the liveness monitor and the replication scheduler.
- `tinydfs.datanode.DataNode` implements storage, downloads and replication. `tinydfs.datanode.load_config(path, ip)` reads a node's JSON configuration into a `DataNodeConfig`.
- `tinydfs.client.upload_file` and `tinydfs.client.download_file` each perform a single transfer, given a stub for the master.
- `tinydfs.rpc.connect(address)` opens an insecure gRPC channel. Wrap it in `tinydfs.rpc.FileServiceStub` and call methods by name, for example `stub.call("KeepAlive", request)`. A failed call raises `tinydfs.rpc.FileServiceError`. `tinydfs.rpc.add_file_service(server, servicer)` registers whichever service methods an object implements.
- `tinydfs.messages` defines the request and response dataclasses. Its `encode` and `decode` functions convert them to and from the wire format, which is compact JSON with base64 for byte fields.

## Limitations

- The master keeps its file and machine tables in memory only. Restarting it loses all knowledge of stored files.
- Connections are unencrypted and unauthenticated.
- Files cannot be deleted or listed through the service.
- The master and client addresses (`localhost:50060`, `localhost:50061`, `localhost:12345`) are fixed and cannot be set from the command line.