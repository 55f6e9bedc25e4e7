"""WhatSend administration CLI."""
