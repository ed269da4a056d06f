"""VM image configuration, actions and building."""