# openvbus

Virtual Ethernet hubs and CAN buses that live inside a small daemon.
Real network traffic can be captured onto a bus (UDP listener or
transparent TCP proxy), recorded to `.vbuscap` files, replayed with the
original timing, and forwarded back out as UDP datagrams.

## Installation

```
pip install .
```

The package has no runtime dependencies beyond the standard library.
Tests run with `pip install .[test]` and `pytest`.

## Commands

| Command      | Purpose                                                 |
|--------------|---------------------------------------------------------|
| `vbusd`      | The bus daemon; it answers text commands over TCP.      |
| `vbusctl`    | Sends one command to the daemon and prints the reply.   |
| `vbus-bench` | UDP/TCP traffic generator and passive sink for testing. |

The daemon listens on `127.0.0.1:47800` by default. Set
`VBUSD_ADDRESS=host:port` to change the address for both `vbusd` and
`vbusctl`, or start the daemon with `vbusd --address host:port`.

Start the daemon, then talk to it:

```
vbusd
vbusctl create eth0 eth 1000000000
vbusctl create can0 can 500000
vbusctl list
```

`vbusctl` joins its arguments with spaces, sends them as one command and
prints the reply. It exits with 1 when given no command and with 2 when
the daemon cannot be reached.

### Daemon commands

```
create <name> eth <link_bps>
create <name> can <bitrate>
delete <name>
list
record <name> on <file>        record <name> off        stoprec <name>
stats <name>                   -> tx=<n> rx=<n> drops=<n>
send-eth <name> <hex>
send-can <name> <id> <hex>     (at most 8 bytes; id may be 0x..., 0... octal or decimal)
send-canfd <name> <id> <hex>   (at most 64 bytes)
replay <name> <file> <exact|burst|scale:K>
replay-udp <name> <file> <host> <port> <exact|burst|scale:K>
replay-sync <mode> <file1> <host1> <port1> [<file2> <host2> <port2> ...]
capture-udp <name> <bindhost> <bindport>
capture-tcp <name> <bindhost> <bindport> <targethost> <targetport>
stop-capture <name>
forward-udp <name> <host> <port>
stop-forward <name>
subscribe <name>
quit
```

Replies start with `OK` on success and `ERR` on failure; `list` replies
with one bus name per line.

Frames sent on an Ethernet hub arrive after the serialisation delay of
payload plus 18 bytes of framing at the link rate; on a CAN bus after
43 bits (67 for CAN FD) plus 8 bits per payload byte at the bitrate.
A forwarder set with `forward-udp` sends each frame at once, without
that delay.

Replay modes: `exact` keeps the captured pacing, `burst` sends as fast as
possible, and `scale:K` multiplies every gap by `K` (`scale:2.0` is twice
as slow, `scale:0.5` twice as fast). Replays run in the background and
the command returns immediately. `replay-sync` plays several files at
once as UDP datagrams against a single shared time origin, so the timing
between streams is kept.

`subscribe` turns the connection into a stream: after the `OK stream`
reply, every frame delivered on the bus is sent as one message holding a
capture record (see below). `openvbus.daemon_client.DaemonClient`
handles this for you.

### A capture-and-replay session

```
vbusctl create cam eth 1000000000
vbusctl capture-udp cam 0.0.0.0 9000
vbusctl record cam on cam.vbuscap
vbus-bench udp 127.0.0.1 9000 100m 10
vbusctl stoprec cam
vbusctl stop-capture cam
vbusctl forward-udp cam 127.0.0.1 9100
vbusctl replay cam cam.vbuscap exact
```

### Traffic generator

```
vbus-bench udp  <host> <port> <rate> [duration_sec]
vbus-bench tcp  <host> <port> <rate> [duration_sec]
vbus-bench recv <port>
```

Rates take a `g`, `m` or `k` suffix in bits per second (`1g`, `100m`,
`500k`). Without a duration, or with `0`, the sender runs until
interrupted. Once a second a line with packets/s, bits/s, total
megabytes and errors is printed. `recv` counts UDP datagrams and TCP
bytes arriving on the port; it fails if the UDP port is already taken.

## Control channel

Each message, in both directions, is a 4-byte big-endian length followed
by that many bytes. A command is one line of UTF-8 text; the reply ends
in a newline. `openvbus.transport.send_command(cmd, address)` sends one
command and returns the reply:

```python
from openvbus.transport import send_command

print(send_command("list", ("127.0.0.1", 47800)))
```

## Capture file format

A `.vbuscap` file is a 16-byte header (`VBUSCAP\0`, a 32-bit version of 1
and a reserved word) followed by records. Each record is a 32-byte
little-endian header — protocol byte, flags byte, reserved 16 bits,
4 padding bytes, 64-bit tag, 64-bit timestamp in nanoseconds, 32-bit
payload length, 4 padding bytes — and then the payload.

Protocols (`openvbus.frame.Proto`): 1 Ethernet II, 2 CAN 2.0, 3 CAN FD,
4 UDP, 5 TCP. For UDP the tag packs the source address, source port and
bound port (`openvbus.capture.udp_tag`); for TCP it is the direction
(0 client to server, 1 server to client); for CAN it is the identifier.

Reading a capture from Python:

```python
from openvbus.recorder import Replayer

with Replayer("cam.vbuscap") as replayer:
    for frame in replayer:
        print(frame.proto, frame.tag, frame.ts_ns, len(frame.payload))
```

A file with a wrong magic or version raises `CaptureFormatError`.

## Library overview

- `openvbus.clock` — `Clock`, `RealtimeClock`
- `openvbus.scheduler` — `Scheduler`, a time-ordered queue of callbacks
- `openvbus.frame` — `Frame`, `Proto`, `hex_to_bytes`
- `openvbus.bus` — `EthHub` and `CanBus` with serialisation delays, `Endpoint`, `BusStats`
- `openvbus.recorder` — `Recorder`, `Replayer`, `CaptureFormatError`, `encode_record`
- `openvbus.capture`, `openvbus.tcp_proxy`, `openvbus.udp_sink` — `UdpEndpoint`, `TcpProxy`, `UdpSink`
- `openvbus.replay` — `replay_onto_bus`, `replay_to_udp`, `replay_sync`, `parse_mode`
- `openvbus.daemon` — `Daemon`, the server behind `vbusd`
- `openvbus.daemon_client`, `openvbus.transport` — `DaemonClient`, `send_command`
- `openvbus.bench` — the traffic generator behind `vbus-bench`
- `openvbus.model`, `openvbus.app_state`, `openvbus.project`, `openvbus.iface`,
  `openvbus.ringbuffer` — the bus manager model, its state and `.ovbproj`
  JSON project files

`openvbus.model.Model` keeps an `AppState` in step with the daemon: it
creates and deletes buses, subscribes to their frames, starts captures,
recordings, forwarders and replays, and with no daemon reachable fills
each bus with synthetic Ethernet traffic on every `tick(dt)`. Projects
are saved with `save_project` and read with `load_project`; the path of
the last one used is kept in `%APPDATA%\OpenVBus\last_project.txt` when
`APPDATA` is set, otherwise in `openvbus_last_project.txt` in the
current directory.

## What the package does not do

- There is no graphical bus manager. `Model` holds the state and actions
  such a window would drive, but nothing draws it.
- Capture is limited to the daemon's UDP listener and TCP proxy, plus a
  mock interface that only tracks whether it is running; there is no
  capture from a raw network interface.
- There is no shared-memory data path; clients use the control channel.