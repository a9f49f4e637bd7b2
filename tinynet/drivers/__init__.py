"""Network device drivers: null, dummy, loopback, TAP and raw packet socket."""